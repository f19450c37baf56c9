import asyncio
import json
from pathlib import Path

from vrclog_connector.rules import Rule
from vrclog_connector.runtime import ControlServer, WatchSession
from vrclog_connector.tailer import WatchTarget


async def _call(port: int, cmd: dict) -> dict:
    reader, writer = await asyncio.open_connection("127.0.0.1", port)
    writer.write((json.dumps(cmd) + "\n").encode())
    await writer.drain()
    data = await reader.readline()
    writer.close()
    await writer.wait_closed()
    return json.loads(data.decode())


def test_control_commands(tmp_path: Path):
    f = tmp_path / "output_log.txt"
    f.write_text("ERROR one\n", encoding="utf-8")

    async def run_case():
        s = WatchSession(WatchTarget(str(tmp_path), f.name), [Rule(id="err", regexp="ERROR.*")], legacy_rules=False)
        stop = asyncio.Event()
        srv = ControlServer("127.0.0.1", 0, s, stop)
        await srv.start()
        port = srv.server.sockets[0].getsockname()[1]
        try:
            rescan = await _call(port, {"cmd": "rescan"})
            status = await _call(port, {"cmd": "status"})
            rules = await _call(port, {"cmd": "update_rules", "rules": [{"id": "x", "regexp": "("}]})
            unknown = await _call(port, {"cmd": "dance"})
            stopped = await _call(port, {"cmd": "stop"})
        finally:
            await srv.close()
        return rescan, status, rules, unknown, stopped, stop.is_set()

    rescan, status, rules, unknown, stopped, stop_set = asyncio.run(run_case())
    assert rescan == {"ok": True, "cursor": len("ERROR one\n")}
    assert status["ok"] and status["file"] == "output_log.txt" and status["matches"] == 1
    assert rules["ok"] and rules["rules"] == 1 and len(rules["invalid"]) == 1
    assert unknown == {"ok": False, "error": "unknown cmd"}
    assert stopped["stopping"] and stop_set


def test_follow_streams_notifications(tmp_path: Path):
    f = tmp_path / "output_log.txt"
    f.write_text("ERROR streamed\n", encoding="utf-8")

    async def run_case():
        s = WatchSession(WatchTarget(str(tmp_path), f.name), [Rule(id="err", regexp="ERROR.*")], legacy_rules=False)
        srv = ControlServer("127.0.0.1", 0, s)
        await srv.start()
        port = srv.server.sockets[0].getsockname()[1]
        reader, writer = await asyncio.open_connection("127.0.0.1", port)
        writer.write(b'{"cmd": "follow"}\n')
        await writer.drain()
        while not s.bcast.subs:
            await asyncio.sleep(0.01)
        await s.request_pass()
        first = json.loads((await asyncio.wait_for(reader.readline(), 5.0)).decode())
        writer.close()
        await srv.close()
        return first

    first = asyncio.run(run_case())
    assert first["type"] == "match"
    assert first["value"] == "ERROR streamed"


def test_update_rules_rejects_non_object_entries(tmp_path: Path):
    async def run_case():
        s = WatchSession(WatchTarget(str(tmp_path), "output_log.txt"), [Rule(id="err", regexp="ERROR.*")], legacy_rules=False)
        srv = ControlServer("127.0.0.1", 0, s)
        await srv.start()
        port = srv.server.sockets[0].getsockname()[1]
        try:
            bad = await _call(port, {"cmd": "update_rules", "rules": [1]})
            odd = await _call(port, {"cmd": "update_rules", "rules": [{"id": "n", "regexp": 5}]})
            status = await _call(port, {"cmd": "status"})
        finally:
            await srv.close()
        return bad, odd, status

    bad, odd, status = asyncio.run(run_case())
    assert bad == {"ok": False, "error": "rules must be JSON objects"}
    assert odd["ok"] and odd["rules"] == 1 and "must be a string" in odd["invalid"][0]
    assert status["ok"]
