import os
from fnmatch import fnmatch
from pathlib import Path
from typing import Optional


STATE_DIR_ENV = "VRCLOG_CONNECTOR_STATE_DIR"


def default_state_dir() -> Path:
    p = os.environ.get(STATE_DIR_ENV)
    if p:
        return Path(p)
    return Path(os.getcwd()) / ".vrclog-connector"


def ensure_state_dir(state: Path) -> Path:
    state.mkdir(parents=True, exist_ok=True)
    return state


def newest_log_name(directory: str, pattern: str = "*.txt") -> Optional[str]:
    """Return the name of the most recently modified non-empty log file.

    Only regular files whose name matches ``pattern`` count. Returns None when
    the directory is missing or holds no candidate.
    """
    newest = None
    newest_mtime = -1.0
    try:
        entries = list(os.scandir(directory))
    except OSError:
        return None
    for entry in entries:
        try:
            if not entry.is_file() or not fnmatch(entry.name, pattern):
                continue
            st = entry.stat()
        except OSError:
            continue
        if st.st_size == 0:
            continue
        if st.st_mtime > newest_mtime:
            newest, newest_mtime = entry.name, st.st_mtime
    return newest
