import json
import os
from pathlib import Path

from vrclog_connector.settings import MonitorConfig, SaveData, default_config_yaml
from vrclog_connector.util import newest_log_name


def test_save_data_load_and_save(tmp_path: Path):
    p = tmp_path / "setting.json"
    p.write_text(json.dumps({
        "path": "C:\\Users\\me\\AppData\\LocalLow\\VRChat\\VRChat",
        "settings": [
            {"id": "1", "title": "Hook", "details": "", "target": "", "type": "Web Request", "url": "http://x/hook", "regexp": "ERROR.*"},
        ],
    }), encoding="utf-8")
    data = SaveData.load(p)
    assert data.path.endswith("VRChat")
    assert [(r.id, r.type, r.url) for r in data.settings] == [("1", "WebRequest", "http://x/hook")]

    out = tmp_path / "out" / "setting.json"
    data.save(out)
    assert SaveData.load(out).to_dict() == data.to_dict()


def test_save_data_missing_or_broken(tmp_path: Path):
    assert SaveData.load(tmp_path / "missing.json").settings == []
    bad = tmp_path / "bad.json"
    bad.write_text("{not json", encoding="utf-8")
    assert SaveData.load(bad).path == ""


def test_save_data_skips_malformed_rule_entries(tmp_path: Path):
    p = tmp_path / "setting.json"
    p.write_text(json.dumps({
        "path": "logs",
        "settings": ["oops", {"id": "n", "regexp": 5}, {"id": "ok", "regexp": "ERROR"}],
    }), encoding="utf-8")
    data = SaveData.load(p)
    assert [r.id for r in data.settings] == ["n", "ok"]
    assert data.settings[0].problem is not None
    assert data.settings[1].problem is None

    p.write_text(json.dumps({"path": 3, "settings": {"id": "x"}}), encoding="utf-8")
    data = SaveData.load(p)
    assert data.path == "" and data.settings == []


def test_config_defaults_and_overrides(tmp_path: Path):
    p = tmp_path / "config.yaml"
    p.write_text(default_config_yaml(), encoding="utf-8")
    assert MonitorConfig.load(p) == MonitorConfig()

    p.write_text("request_timeout: 3\nrescan_on_truncate: false\nlog_glob: 'output_log_*.txt'\npolling: 'yes please'\n", encoding="utf-8")
    cfg = MonitorConfig.load(p)
    assert cfg.request_timeout == 3.0
    assert cfg.rescan_on_truncate is False
    assert cfg.log_glob == "output_log_*.txt"
    assert cfg.polling is False
    assert MonitorConfig.load(tmp_path / "none.yaml") == MonitorConfig()


def test_newest_log_name_skips_empty_and_other_files(tmp_path: Path):
    old = tmp_path / "output_log_old.txt"
    new = tmp_path / "output_log_new.txt"
    empty = tmp_path / "output_log_empty.txt"
    other = tmp_path / "notes.log"
    for p, text in ((old, "a\n"), (new, "b\n"), (empty, ""), (other, "c\n")):
        p.write_text(text, encoding="utf-8")
    (tmp_path / "dir.txt").mkdir()
    os.utime(old, (1000, 1000))
    os.utime(new, (2000, 2000))
    os.utime(empty, (3000, 3000))
    os.utime(other, (4000, 4000))
    assert newest_log_name(str(tmp_path)) == "output_log_new.txt"
    assert newest_log_name(str(tmp_path), "*.log") == "notes.log"
    assert newest_log_name(str(tmp_path / "missing")) is None
