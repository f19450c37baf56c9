import asyncio
import json
import logging
import socket
from pathlib import Path
from typing import Optional

import typer


app = typer.Typer(help="VRChat log connector: tail the client log and forward matching lines to webhooks")
rules_app = typer.Typer(help="Inspect the rules in the settings file")
app.add_typer(rules_app, name="rules")

DEFAULT_PORT = 8790


def _send_control_command(cmd: dict, host: str = "127.0.0.1", port: int = DEFAULT_PORT, timeout: float = 3.0) -> dict:
    data = (json.dumps(cmd) + "\n").encode()
    with socket.create_connection((host, port), timeout=timeout) as s:
        s.sendall(data)
        s.shutdown(socket.SHUT_WR)
        buf = s.recv(65536)
    if not buf:
        return {}
    try:
        return json.loads(buf.decode())
    except ValueError:
        return {"raw": buf.decode(errors="ignore")}


def _control(cmd: dict, host: str, port: int) -> None:
    try:
        resp = _send_control_command(cmd, host, port)
    except OSError as e:
        typer.echo(json.dumps({"ok": False, "error": f"connector not reachable on {host}:{port}: {e}"}))
        raise typer.Exit(1)
    typer.echo(json.dumps(resp, indent=2, ensure_ascii=False))


def _state_dir(state_dir: Optional[str]) -> Path:
    from .util import default_state_dir, ensure_state_dir

    return ensure_state_dir(Path(state_dir).resolve() if state_dir else default_state_dir())


def _settings_path(state: Path, settings: Optional[str]) -> Path:
    return Path(settings).resolve() if settings else state / "setting.json"


@app.command()
def start(
    dir: Optional[str] = typer.Option(None, "--dir", help="VRChat log folder (defaults to 'path' in the settings file)", metavar="PATH"),
    file: Optional[str] = typer.Option(None, "--file", help="Log file name inside --dir (defaults to the newest)", metavar="NAME"),
    settings: Optional[str] = typer.Option(None, "--settings", help="Settings JSON with path and rules", metavar="FILE"),
    state_dir: Optional[str] = typer.Option(None, "--state-dir", help="Directory for config.yaml, events and counters"),
    host: str = typer.Option("127.0.0.1", help="Control server host"),
    port: int = typer.Option(DEFAULT_PORT, help="Control server port"),
    start_at_end: Optional[bool] = typer.Option(None, "--start-at-end/--replay", help="Skip or replay lines already in the log"),
    polling: Optional[bool] = typer.Option(None, "--polling/--native", help="Poll the folder instead of using native events"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging"),
):
    """Watch the log folder and dispatch matching lines until stopped.

    - Reads `config.yaml` from the state directory when present.
    - Follows the newest `*.txt` log, switching files when VRChat starts a new one.
    - Serves control commands (status, rescan, stop, ...) on --host/--port.
    """
    from .runtime import run_monitor
    from .settings import MonitorConfig

    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    state = _state_dir(state_dir)
    config = MonitorConfig.load(state / "config.yaml")
    if start_at_end is not None:
        config.start_at_end = start_at_end
    if polling is not None:
        config.polling = polling
    code = asyncio.run(
        run_monitor(
            directory=str(Path(dir).resolve()) if dir else "",
            file_name=file or "",
            settings_path=_settings_path(state, settings),
            state_dir=state,
            config=config,
            host=host,
            port=port,
        )
    )
    raise typer.Exit(code)


@app.command()
def status(host: str = "127.0.0.1", port: int = DEFAULT_PORT):
    """Show target file, cursor and counters of the running connector."""
    _control({"cmd": "status"}, host, port)


@app.command()
def stop(host: str = "127.0.0.1", port: int = DEFAULT_PORT):
    """Ask the running connector to stop gracefully."""
    _control({"cmd": "stop"}, host, port)


@app.command()
def rescan(host: str = "127.0.0.1", port: int = DEFAULT_PORT):
    """Re-read the current log from the start, dispatching every match again."""
    _control({"cmd": "rescan"}, host, port)


@app.command("set-file")
def set_file(
    name: str,
    dir: Optional[str] = typer.Option(None, "--dir", help="Switch to another log folder as well"),
    host: str = "127.0.0.1",
    port: int = DEFAULT_PORT,
):
    """Tail another log file; the cursor starts over at the beginning."""
    cmd = {"cmd": "set_target", "file": name}
    if dir:
        cmd["path"] = str(Path(dir).resolve())
    _control(cmd, host, port)


@app.command()
def follow(host: str = "127.0.0.1", port: int = DEFAULT_PORT):
    """Print notifications from the running connector as JSON lines."""
    try:
        with socket.create_connection((host, port)) as s:
            s.sendall(b'{"cmd": "follow"}\n')
            with s.makefile("r", encoding="utf-8") as f:
                for line in f:
                    if line.strip():
                        typer.echo(line.rstrip("\n"))
    except KeyboardInterrupt:
        pass
    except OSError as e:
        typer.echo(f"connector not reachable on {host}:{port}: {e}", err=True)
        raise typer.Exit(1)


@app.command()
def scan(
    path: str,
    settings: Optional[str] = typer.Option(None, "--settings", help="Settings JSON with rules", metavar="FILE"),
    state_dir: Optional[str] = typer.Option(None, "--state-dir"),
    dispatch_hits: bool = typer.Option(False, "--dispatch", help="Run the configured sinks for each match"),
):
    """Run one pass over a log file from the start and print the matches."""
    from .rules import builtin_rules, match_line
    from .settings import MonitorConfig, SaveData
    from .sinks import dispatch
    from .tailer import FileUnavailable, WatchTarget, tail

    state = _state_dir(state_dir)
    config = MonitorConfig.load(state / "config.yaml")
    data = SaveData.load(_settings_path(state, settings))
    for r in data.settings:
        if r.problem is not None:
            typer.echo(f"skipping {r.problem}", err=True)
    rules = data.settings + (builtin_rules() if config.legacy_rules else [])
    p = Path(path).resolve()

    def on_line(line: str) -> None:
        for m in match_line(line, rules):
            row = {"rule": m.rule.id, "title": m.rule.title, "value": m.value}
            if dispatch_hits:
                res = dispatch(m, timeout=config.request_timeout)
                row.update({"outcome": res.outcome, "message": res.message})
            typer.echo(json.dumps(row, ensure_ascii=False))

    try:
        result = tail(WatchTarget(str(p.parent), p.name), 0, on_line=on_line)
    except FileUnavailable as e:
        typer.echo(f"cannot read {e.path}: {e.reason}", err=True)
        raise typer.Exit(1)
    typer.echo(f"{len(result.lines)} lines, {result.cursor} bytes consumed", err=True)


@rules_app.command("list")
def rules_list(
    settings: Optional[str] = typer.Option(None, "--settings", metavar="FILE"),
    state_dir: Optional[str] = typer.Option(None, "--state-dir"),
):
    """List configured rules."""
    from .settings import SaveData

    data = SaveData.load(_settings_path(_state_dir(state_dir), settings))
    typer.echo(json.dumps([r.to_dict() for r in data.settings], indent=2, ensure_ascii=False))


@rules_app.command("check")
def rules_check(
    settings: Optional[str] = typer.Option(None, "--settings", metavar="FILE"),
    state_dir: Optional[str] = typer.Option(None, "--state-dir"),
):
    """Validate rule patterns and sink settings; exits 1 on problems."""
    from .rules import SINK_TYPES, WEB_REQUEST
    from .settings import SaveData

    data = SaveData.load(_settings_path(_state_dir(state_dir), settings))
    problems = [str(r.problem) for r in data.settings if r.problem is not None]
    for r in data.settings:
        if r.type not in SINK_TYPES:
            problems.append(f"rule {r.id}: unknown sink type {r.type!r}")
        elif r.type == WEB_REQUEST and not r.url.startswith("http"):
            problems.append(f"rule {r.id}: invalid url {r.url!r}")
    for msg in problems:
        typer.echo(msg)
    if problems:
        raise typer.Exit(1)
    typer.echo(f"{len(data.settings)} rules OK")


def main():
    """Entry point for console_scripts."""
    app()


if __name__ == "__main__":
    main()
