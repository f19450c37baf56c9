import asyncio
import json
import logging
import os
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Set, Union

from watchdog.events import FileSystemEventHandler
from watchdog.observers import Observer
from watchdog.observers.polling import PollingObserver

from .rules import Rule, builtin_rules, load_rules, match_line
from .settings import MonitorConfig, SaveData
from .sinks import DEFAULT_TIMEOUT, dispatch
from .tailer import CursorStore, FileUnavailable, WatchTarget, tail
from .util import STATE_DIR_ENV, newest_log_name


logger = logging.getLogger("vrclog_connector.runtime")

IDLE = "idle"
WATCHING = "watching"


@dataclass
class FileEvent:
    kind: str  # "created" | "modified" | "moved"
    path: str
    ts: float


def _norm(path: str) -> str:
    return os.path.normcase(os.path.abspath(path))


class _TargetEventHandler(FileSystemEventHandler):
    def __init__(self, notifier: "ChangeNotifier"):
        super().__init__()
        self.notifier = notifier

    def on_created(self, event):
        self.notifier.on_fs_event("created", event.src_path, event.is_directory)

    def on_modified(self, event):
        self.notifier.on_fs_event("modified", event.src_path, event.is_directory)

    def on_moved(self, event):
        # a file renamed onto the target path counts as a write to it
        self.notifier.on_fs_event("moved", event.dest_path, event.is_directory)


class ChangeNotifier:
    """Directory subscription that fires only for the watched file.

    ``target_path`` is consulted on every event, so switching the file name
    inside the same directory needs no resubscription.
    """

    def __init__(self, target_path: Callable[[], str], callback: Callable[[FileEvent], None],
                 polling: bool = False, poll_interval: float = 1.0):
        self.target_path = target_path
        self.callback = callback
        self.polling = polling
        self.poll_interval = poll_interval
        self._state = IDLE
        self.directory: Optional[str] = None
        self._observer = None

    @property
    def state(self) -> str:
        if self._state == WATCHING and self._observer is not None and not self._observer.is_alive():
            logger.error(f"observer for {self.directory} died, notifier is idle")
            self._observer = None
            self._state = IDLE
        return self._state

    def start(self, directory: str) -> bool:
        if self.state == WATCHING:
            return True
        if not os.path.isdir(directory):
            logger.error(f"cannot watch {directory}: not a directory")
            return False
        observer = PollingObserver(timeout=self.poll_interval) if self.polling else Observer()
        try:
            observer.schedule(_TargetEventHandler(self), directory, recursive=False)
            observer.start()
        except OSError as e:
            logger.error(f"cannot watch {directory}: {e}")
            return False
        self._observer = observer
        self.directory = directory
        self._state = WATCHING
        logger.info(f"watching {directory}")
        return True

    def stop(self) -> None:
        observer, self._observer = self._observer, None
        self._state = IDLE
        if observer is None:
            return
        observer.stop()
        observer.join(timeout=5.0)
        logger.info(f"stopped watching {self.directory}")

    def on_fs_event(self, kind: str, path: Union[str, bytes], is_directory: bool) -> None:
        if is_directory or self.state != WATCHING:
            return
        path = os.fsdecode(path)
        if _norm(path) != _norm(self.target_path()):
            return
        self.callback(FileEvent(kind, path, time.time()))


class Broadcaster:
    def __init__(self, max_queue: int = 200):
        self.subs: List[asyncio.Queue] = []
        self.max_queue = max_queue

    def add_subscriber(self) -> asyncio.Queue:
        q: asyncio.Queue = asyncio.Queue(maxsize=self.max_queue)
        self.subs.append(q)
        return q

    def remove_subscriber(self, q: asyncio.Queue) -> None:
        try:
            self.subs.remove(q)
        except ValueError:
            pass

    def publish(self, event: Dict[str, Any]) -> None:
        # Drop oldest on overflow so a slow follower never blocks the session
        for q in list(self.subs):
            if q.full():
                try:
                    q.get_nowait()
                except asyncio.QueueEmpty:
                    pass
            q.put_nowait(event)


class WatchSession:
    """One tailed file: target, cursor, rules and the notifier feeding them.

    Tail passes are serialized by ``_lock``; a trigger that arrives while a
    pass is running schedules exactly one follow-up pass.
    """

    def __init__(
        self,
        target: WatchTarget,
        rules: Optional[Iterable[Union[Rule, Dict[str, Any]]]] = None,
        rescan_on_truncate: bool = True,
        request_timeout: float = DEFAULT_TIMEOUT,
        legacy_rules: bool = True,
        start_at_end: bool = False,
        polling: bool = False,
        events_path: Optional[Path] = None,
        on_change: Optional[Callable[[str, List[Rule]], None]] = None,
    ):
        self.target = target
        self.cursor = CursorStore()
        self.rescan_on_truncate = rescan_on_truncate
        self.request_timeout = request_timeout
        self.legacy = builtin_rules() if legacy_rules else []
        self.rules: List[Rule] = []
        self.invalid_rules: List[str] = []
        self._set_rules(load_rules(rules or []))
        self.bcast = Broadcaster()
        self.notifier = ChangeNotifier(lambda: self.target.path, self._on_file_event, polling=polling)
        self.events_path = events_path
        self.on_change = on_change
        self._lock = asyncio.Lock()
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._pass_task: Optional[asyncio.Task] = None
        self._rerun = False
        self._skip_next = start_at_end
        self.event_count = 0
        self.pass_count = 0
        self.line_count = 0
        self.match_count = 0
        self.error_count = 0

    @property
    def active_rules(self) -> List[Rule]:
        return self.rules + self.legacy

    @property
    def watching(self) -> bool:
        return self.notifier.state == WATCHING

    def _set_rules(self, rules: List[Rule]) -> None:
        self.rules = rules
        self.invalid_rules = [str(r.problem) for r in rules if r.problem is not None]

    # -- notifications -------------------------------------------------

    def log_event(self, event: Dict[str, Any]) -> None:
        if not self.events_path:
            return
        try:
            self.events_path.parent.mkdir(parents=True, exist_ok=True)
            with self.events_path.open("a", encoding="utf-8") as f:
                f.write(json.dumps(event, ensure_ascii=False) + "\n")
        except OSError as e:
            logger.warning(f"cannot append to {self.events_path}: {e}")

    def _publish(self, event: Dict[str, Any]) -> None:
        typ = event.get("type")
        if typ == "match":
            print(f"[hit] {event['rule_title'] or event['rule_id']} :: {event['value']} -> {event['outcome']}")
        elif typ == "error":
            print(f"[error] {event['kind']} {event['path']}: {event['message']}")
        elif typ == "target":
            print(f"[file] target {event['path']}")
        self.bcast.publish(event)
        self.log_event(event)

    def _publish_threadsafe(self, event: Dict[str, Any]) -> None:
        loop = self._loop
        if loop is None or loop.is_closed():
            self.log_event(event)
            return
        loop.call_soon_threadsafe(self._publish, event)

    # -- tail passes ---------------------------------------------------

    def request_pass(self) -> asyncio.Task:
        """Schedule a tail pass, coalescing with one already in flight."""
        if self._pass_task is not None and not self._pass_task.done():
            self._rerun = True
            return self._pass_task
        self._loop = asyncio.get_running_loop()
        self._pass_task = self._loop.create_task(self._drain())
        return self._pass_task

    async def _drain(self) -> None:
        while True:
            self._rerun = False
            await self._locked_pass()
            if not self._rerun:
                return

    async def _locked_pass(self) -> None:
        async with self._lock:
            if not self.target.file_name:
                logger.debug("no log file selected, pass skipped")
                return
            target = WatchTarget(self.target.directory, self.target.file_name)
            skip, self._skip_next = self._skip_next, False
            try:
                await asyncio.to_thread(self._run_pass, target, skip)
            except FileUnavailable as e:
                self.error_count += 1
                logger.warning(f"pass skipped: {e}")
                self._publish({
                    "type": "error", "kind": "file_unavailable", "path": e.path,
                    "message": e.reason, "ts": time.time(),
                })
            except OSError as e:
                self.error_count += 1
                logger.error(f"pass failed on {target.path}: {e}")
                self._publish({
                    "type": "error", "kind": "read_error", "path": target.path,
                    "message": str(e), "ts": time.time(),
                })

    def _run_pass(self, target: WatchTarget, skip: bool) -> None:
        start = self.cursor.get()
        rules = self.active_rules

        def on_line(line: str) -> None:
            self.line_count += 1
            for m in match_line(line, rules):
                res = dispatch(m, timeout=self.request_timeout)
                self.match_count += 1
                self._publish_threadsafe({
                    "type": "match",
                    "path": target.path,
                    "rule_id": m.rule.id,
                    "rule_title": m.rule.title,
                    "sink": m.rule.type,
                    "value": m.value,
                    "outcome": res.outcome,
                    "message": res.message,
                    "ts": m.ts,
                })

        result = tail(target, start, on_line=None if skip else on_line,
                      rescan_on_truncate=self.rescan_on_truncate)
        if result.truncated:
            self.cursor.reset()
        self.cursor.advance(result.cursor)
        self.pass_count += 1
        logger.debug(f"pass {target.path}: {len(result.lines)} lines, cursor {start} -> {result.cursor}")
        self._publish_threadsafe({
            "type": "pass",
            "path": target.path,
            "start": 0 if result.truncated else start,
            "end": result.cursor,
            "lines": len(result.lines),
            "skipped": skip,
            "truncated": result.truncated,
            "ts": time.time(),
        })

    def _on_file_event(self, ev: FileEvent) -> None:
        # Runs on the observer thread
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        loop.call_soon_threadsafe(self._trigger_from_event, ev)

    def _trigger_from_event(self, ev: FileEvent) -> None:
        self.event_count += 1
        logger.debug(f"{ev.kind} {ev.path}")
        self.request_pass()

    # -- inbound triggers ----------------------------------------------

    async def start_watching(self) -> bool:
        self._loop = asyncio.get_running_loop()
        if self.watching:
            return True
        if not self.notifier.start(self.target.directory):
            self.error_count += 1
            self._publish({
                "type": "error", "kind": "subscribe_failed", "path": self.target.directory,
                "message": "cannot subscribe to directory changes", "ts": time.time(),
            })
            return False
        await self.request_pass()
        return True

    async def stop_watching(self) -> None:
        """Unsubscribe and let an in-flight pass finish."""
        if self.watching:
            await asyncio.to_thread(self.notifier.stop)
        task = self._pass_task
        if task is not None and not task.done():
            await task

    async def set_target(self, directory: Optional[str] = None, file_name: Optional[str] = None) -> bool:
        directory = self.target.directory if directory is None else directory
        file_name = self.target.file_name if file_name is None else file_name
        async with self._lock:
            dir_changed = _norm(directory) != _norm(self.target.directory)
            if not dir_changed and file_name == self.target.file_name:
                return False
            self.target = WatchTarget(directory, file_name)
            self.cursor.reset()
            resubscribe = dir_changed and self.watching
        if resubscribe:
            await asyncio.to_thread(self.notifier.stop)
            if not self.notifier.start(directory):
                self._publish({
                    "type": "error", "kind": "subscribe_failed", "path": directory,
                    "message": "cannot subscribe to directory changes", "ts": time.time(),
                })
        self._publish({"type": "target", "path": self.target.path, "ts": time.time()})
        if dir_changed:
            self._notify_change()
        await self.request_pass()
        return True

    async def reset_cursor(self) -> None:
        async with self._lock:
            self.cursor.reset()

    async def rescan(self) -> None:
        """Re-read the whole file, re-dispatching every matching line."""
        await self.reset_cursor()
        await self.request_pass()

    async def skip_to_end(self) -> None:
        """Consume the current file content without matching or dispatching."""
        self._skip_next = True
        await self.request_pass()

    async def update_rules(self, rules: Iterable[Union[Rule, Dict[str, Any]]]) -> List[str]:
        parsed = load_rules(rules)
        async with self._lock:
            self._set_rules(parsed)
        self._publish({
            "type": "rules", "count": len(self.rules), "invalid": self.invalid_rules, "ts": time.time(),
        })
        self._notify_change()
        return self.invalid_rules

    def _notify_change(self) -> None:
        if self.on_change is None:
            return
        try:
            self.on_change(self.target.directory, list(self.rules))
        except OSError as e:
            logger.error(f"cannot persist settings: {e}")

    def status(self) -> Dict[str, Any]:
        return {
            "state": self.notifier.state,
            "directory": self.target.directory,
            "file": self.target.file_name,
            "cursor": self.cursor.get(),
            "rules": len(self.rules),
            "invalid_rules": self.invalid_rules,
            "events": self.event_count,
            "passes": self.pass_count,
            "lines": self.line_count,
            "matches": self.match_count,
            "errors": self.error_count,
        }


async def follow_newest(session: WatchSession, pattern: str, interval: float) -> None:
    """Switch the session to the newest log whenever a fresher one appears."""
    while True:
        await asyncio.sleep(interval)
        name = await asyncio.to_thread(newest_log_name, session.target.directory, pattern)
        if name and name != session.target.file_name:
            logger.info(f"newer log file: {name}")
            await session.set_target(session.target.directory, name)


class ControlServer:
    def __init__(self, host: str, port: int, session: WatchSession, stop_event: Optional[asyncio.Event] = None):
        self.host = host
        self.port = port
        self.session = session
        self.stop_event = stop_event
        self.server = None
        self._followers: Set[asyncio.Task] = set()

    async def handle(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter):
        data = await reader.readline()
        try:
            cmd = json.loads(data.decode()) if data else {}
        except ValueError:
            cmd = {}
        if not isinstance(cmd, dict):
            cmd = {}
        try:
            if cmd.get("cmd") == "follow":
                await self._follow(writer)
                return
            resp = await self._dispatch(cmd)
            writer.write((json.dumps(resp) + "\n").encode())
            await writer.drain()
        except (ConnectionResetError, BrokenPipeError):
            return
        finally:
            writer.close()
            try:
                await writer.wait_closed()
            except (ConnectionResetError, BrokenPipeError):
                pass

    async def _follow(self, writer: asyncio.StreamWriter):
        q = self.session.bcast.add_subscriber()
        task = asyncio.current_task()
        self._followers.add(task)
        try:
            while True:
                try:
                    evt = await asyncio.wait_for(q.get(), timeout=15.0)
                    writer.write((json.dumps(evt, ensure_ascii=False) + "\n").encode())
                except asyncio.TimeoutError:
                    # keep-alive
                    writer.write(b"\n")
                await writer.drain()
        finally:
            self._followers.discard(task)
            self.session.bcast.remove_subscriber(q)

    async def _dispatch(self, cmd: dict) -> dict:
        s = self.session
        typ = cmd.get("cmd")
        if typ == "status":
            return {"ok": True, **s.status()}
        if typ == "start_watching":
            return {"ok": await s.start_watching(), "state": s.notifier.state}
        if typ == "stop_watching":
            await s.stop_watching()
            return {"ok": True, "state": s.notifier.state}
        if typ == "set_target":
            changed = await s.set_target(cmd.get("path"), cmd.get("file"))
            return {"ok": True, "changed": changed, "target": s.target.path}
        if typ == "reset":
            await s.reset_cursor()
            return {"ok": True, "cursor": s.cursor.get()}
        if typ == "rescan":
            await s.rescan()
            return {"ok": True, "cursor": s.cursor.get()}
        if typ == "update_rules":
            rules = cmd.get("rules")
            if not isinstance(rules, list):
                return {"ok": False, "error": "missing rules"}
            if not all(isinstance(r, dict) for r in rules):
                return {"ok": False, "error": "rules must be JSON objects"}
            invalid = await s.update_rules(rules)
            return {"ok": True, "rules": len(s.rules), "invalid": invalid}
        if typ == "stop":
            if self.stop_event is not None:
                self.stop_event.set()
            return {"ok": True, "stopping": True}
        return {"ok": False, "error": "unknown cmd"}

    async def start(self):
        self.server = await asyncio.start_server(self.handle, self.host, self.port)

    async def close(self):
        # followers never finish on their own
        for task in list(self._followers):
            task.cancel()
        if self.server:
            self.server.close()
            await self.server.wait_closed()


def build_session(data: SaveData, config: MonitorConfig, directory: str, file_name: str,
                  settings_path: Optional[Path] = None, state_dir: Optional[Path] = None) -> WatchSession:
    def _persist(path: str, rules: List[Rule]) -> None:
        data.path = path
        data.settings = rules
        data.save(settings_path)

    return WatchSession(
        WatchTarget(directory, file_name),
        data.settings,
        rescan_on_truncate=config.rescan_on_truncate,
        request_timeout=config.request_timeout,
        legacy_rules=config.legacy_rules,
        start_at_end=config.start_at_end,
        polling=config.polling,
        events_path=(state_dir / "events.ndjson") if state_dir else None,
        on_change=_persist if settings_path else None,
    )


async def run_monitor(directory: str, file_name: str, settings_path: Path, state_dir: Path,
                      config: MonitorConfig, host: str, port: int) -> int:
    data = SaveData.load(settings_path)
    directory = directory or data.path
    if not directory:
        print("No log directory configured. Pass --dir or set 'path' in the settings file.")
        return 1
    os.environ[STATE_DIR_ENV] = str(state_dir)
    name = file_name or newest_log_name(directory, config.log_glob) or ""
    session = build_session(data, config, directory, name, settings_path, state_dir)
    for msg in session.invalid_rules:
        print(f"[rules] {msg}")

    stop_event = asyncio.Event()
    ctrl = ControlServer(host, port, session, stop_event)
    await ctrl.start()
    if not await session.start_watching():
        print(f"Cannot watch {directory}; waiting for control commands.")
    selector = None
    if config.select_interval > 0:
        selector = asyncio.create_task(follow_newest(session, config.log_glob, config.select_interval))

    print(f"Connector running on {session.target.path or directory}. Control server on {host}:{port}. Press Ctrl-C to stop.")
    try:
        await stop_event.wait()
    except asyncio.CancelledError:
        pass
    finally:
        if selector is not None:
            selector.cancel()
        await session.stop_watching()
        await ctrl.close()
        print("Connector stopped.")
    return 0
