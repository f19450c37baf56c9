from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Dict

from .util import default_state_dir


logger = logging.getLogger("vrclog_connector.metrics")


def _usage_path() -> Path:
    return default_state_dir() / "sink_usage.json"


def increment_sink_usage(rule_id: str, outcome: str) -> None:
    """Count one dispatch result for ``rule_id`` under its outcome name."""
    path = _usage_path()
    try:
        data: Dict[str, Dict[str, int]] = {}
        if path.exists():
            data = json.loads(path.read_text(encoding="utf-8"))
        counts = data.setdefault(rule_id, {})
        counts[outcome] = counts.get(outcome, 0) + 1
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(data, sort_keys=True), encoding="utf-8")
    except (OSError, ValueError, AttributeError) as e:
        # counters are best effort
        logger.debug(f"sink counters not written: {e}")


def get_sink_usage() -> Dict[str, Dict[str, int]]:
    path = _usage_path()
    try:
        if path.exists():
            return json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError):
        pass
    return {}
