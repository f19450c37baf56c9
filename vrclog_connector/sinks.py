from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

import requests

from .metrics import increment_sink_usage
from .rules import Match, OUTPUT_TEXT, SEND_OVERLAY, WEB_REQUEST


logger = logging.getLogger("vrclog_connector.sinks")

SUCCESS = "success"
HTTP_ERROR = "http_error"
INVALID_CONFIG = "invalid_config"

DEFAULT_TIMEOUT = 10.0


@dataclass
class DispatchResult:
    outcome: str
    message: str = ""
    status: Optional[int] = None

    @property
    def ok(self) -> bool:
        return self.outcome == SUCCESS


def build_payload(match: Match) -> Dict[str, Any]:
    return {"value": match.value, "title": match.rule.title}


def sink_web_request(match: Match, timeout: float = DEFAULT_TIMEOUT) -> DispatchResult:
    url = (match.rule.url or "").strip()
    if not url:
        return DispatchResult(INVALID_CONFIG, "URL is empty")
    if not url.startswith("http"):
        return DispatchResult(INVALID_CONFIG, f"URL is invalid: {url}")
    try:
        res = requests.post(url, json=build_payload(match), timeout=timeout)
    except requests.Timeout:
        return DispatchResult(HTTP_ERROR, f"timeout after {timeout}s posting to {url}")
    except requests.RequestException as e:
        return DispatchResult(HTTP_ERROR, f"{url}: {e}")
    body = res.text[:500]
    logger.debug(f"{url} -> {res.status_code} {body}")
    if not 200 <= res.status_code < 300:
        return DispatchResult(HTTP_ERROR, f"{url} -> HTTP {res.status_code}: {body}", res.status_code)
    return DispatchResult(SUCCESS, body or "OK", res.status_code)


def sink_noop(match: Match, timeout: float = DEFAULT_TIMEOUT) -> DispatchResult:
    return DispatchResult(SUCCESS, "")


SINKS = {
    WEB_REQUEST: sink_web_request,
    SEND_OVERLAY: sink_noop,
    OUTPUT_TEXT: sink_noop,
}


def dispatch(match: Match, timeout: float = DEFAULT_TIMEOUT) -> DispatchResult:
    """Run the side effect configured on the matching rule.

    Never raises; network and configuration problems come back as the
    result's outcome so one bad webhook cannot stop line processing.
    """
    fn = SINKS.get(match.rule.type)
    if fn is None:
        res = DispatchResult(INVALID_CONFIG, f"unknown sink type: {match.rule.type}")
    else:
        res = fn(match, timeout=timeout)
    if not res.ok:
        logger.warning(f"rule {match.rule.id} ({match.rule.type}): {res.outcome}: {res.message}")
    increment_sink_usage(match.rule.id, res.outcome)
    return res
