from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from .rules import Rule, load_rules


logger = logging.getLogger("vrclog_connector.settings")


@dataclass
class SaveData:
    """Persisted connector settings: the log folder and the rule list."""

    path: str = ""
    settings: List[Rule] = field(default_factory=list)

    @classmethod
    def load(cls, file: Path) -> "SaveData":
        if not file.exists():
            return cls()
        try:
            raw = json.loads(file.read_text(encoding="utf-8")) or {}
        except (OSError, ValueError) as e:
            logger.error(f"cannot read settings {file}: {e}")
            return cls()
        if not isinstance(raw, dict):
            logger.error(f"settings {file}: expected a JSON object")
            return cls()
        items = raw.get("settings") or []
        if not isinstance(items, list):
            logger.error(f"settings {file}: 'settings' must be a list, ignored")
            items = []
        path = raw.get("path")
        return cls(path=path if isinstance(path, str) else "", settings=load_rules(items))

    def to_dict(self) -> Dict[str, Any]:
        return {"path": self.path, "settings": [r.to_dict() for r in self.settings]}

    def save(self, file: Path) -> None:
        file.parent.mkdir(parents=True, exist_ok=True)
        file.write_text(json.dumps(self.to_dict(), ensure_ascii=False, indent=2), encoding="utf-8")


@dataclass
class MonitorConfig:
    log_glob: str = "*.txt"
    select_interval: float = 5.0
    request_timeout: float = 10.0
    rescan_on_truncate: bool = True
    start_at_end: bool = False
    legacy_rules: bool = True
    polling: bool = False

    @classmethod
    def load(cls, path: Optional[Path]) -> "MonitorConfig":
        """Read ``config.yaml``; unknown keys are ignored, a broken file yields defaults."""
        cfg = cls()
        if not path or not path.exists():
            return cfg
        try:
            data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
        except (OSError, yaml.YAMLError) as e:
            logger.error(f"cannot read config {path}: {e}")
            return cfg
        if not isinstance(data, dict):
            return cfg
        for f in fields(cls):
            if f.name not in data or data[f.name] is None:
                continue
            default = getattr(cfg, f.name)
            if isinstance(default, bool) and not isinstance(data[f.name], bool):
                logger.warning(f"config {path}: {f.name} must be true or false")
                continue
            try:
                setattr(cfg, f.name, type(default)(data[f.name]))
            except (TypeError, ValueError):
                logger.warning(f"config {path}: bad value for {f.name}: {data[f.name]!r}")
        return cfg


def default_config_yaml() -> str:
    return """
# Glob for log files considered by the newest-file selector
log_glob: "*.txt"
# Seconds between newest-file checks
select_interval: 5.0
# Webhook timeout in seconds
request_timeout: 10.0
# Re-read from the start when the file shrinks below the cursor
rescan_on_truncate: true
# Skip content already in the file when watching starts
start_at_end: false
# Built-in user/world recognizers
legacy_rules: true
# Use a polling observer instead of native file-system events
polling: false
"""
