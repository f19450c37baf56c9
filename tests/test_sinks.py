import json
import threading
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer

import pytest
import requests

from vrclog_connector import sinks
from vrclog_connector.metrics import get_sink_usage
from vrclog_connector.rules import Match, Rule, load_rules, match_line
from vrclog_connector.sinks import HTTP_ERROR, INVALID_CONFIG, SUCCESS, dispatch


class _Hook:
    def __init__(self, status: int = 200):
        self.status = status
        self.requests = []
        hook = self

        class Handler(BaseHTTPRequestHandler):
            def do_POST(self):  # noqa: N802
                n = int(self.headers.get("Content-Length", "0"))
                hook.requests.append({
                    "path": self.path,
                    "content_type": self.headers.get("Content-Type"),
                    "body": json.loads(self.rfile.read(n).decode("utf-8")),
                })
                body = b"received"
                self.send_response(hook.status)
                self.send_header("Content-Length", str(len(body)))
                self.end_headers()
                self.wfile.write(body)

            def log_message(self, fmt, *args):
                return

        self.server = ThreadingHTTPServer(("127.0.0.1", 0), Handler)
        self.thread = threading.Thread(target=self.server.serve_forever, daemon=True)

    @property
    def url(self) -> str:
        return f"http://127.0.0.1:{self.server.server_address[1]}/hook"

    def __enter__(self):
        self.thread.start()
        return self

    def __exit__(self, *exc):
        self.server.shutdown()
        self.server.server_close()


def _match(rule: Rule, value: str = "v") -> Match:
    return Match(rule=rule, value=value, line=value, ts=0.0)


def test_web_request_posts_value_and_title():
    with _Hook() as hook:
        rules = load_rules([{"id": "err", "title": "Disk", "regexp": "ERROR.*", "type": "Web Request", "url": hook.url}])
        hits = match_line("2024 ERROR disk full", rules)
        res = dispatch(hits[0], timeout=5.0)
    assert res.outcome == SUCCESS
    assert res.status == 200
    assert hook.requests == [{
        "path": "/hook",
        "content_type": "application/json",
        "body": {"value": "ERROR disk full", "title": "Disk"},
    }]
    assert get_sink_usage()["err"] == {"success": 1}


def test_non_2xx_is_http_error():
    with _Hook(status=500) as hook:
        res = dispatch(_match(Rule(id="r", title="t", type="WebRequest", url=hook.url)), timeout=5.0)
    assert res.outcome == HTTP_ERROR
    assert res.status == 500
    assert "received" in res.message
    assert get_sink_usage()["r"] == {"http_error": 1}


@pytest.mark.parametrize("url", ["", "not-a-url", "ftp://x/hook"])
def test_invalid_url_never_hits_network(monkeypatch, url):
    def _boom(*a, **kw):
        raise AssertionError("network call attempted")

    monkeypatch.setattr(sinks.requests, "post", _boom)
    res = dispatch(_match(Rule(id="r", type="WebRequest", url=url)))
    assert res.outcome == INVALID_CONFIG
    assert get_sink_usage()["r"] == {"invalid_config": 1}


def test_connection_error_is_http_error(monkeypatch):
    def _refuse(*a, **kw):
        raise requests.ConnectionError("refused")

    monkeypatch.setattr(sinks.requests, "post", _refuse)
    res = dispatch(_match(Rule(id="r", type="WebRequest", url="http://127.0.0.1:9/hook")))
    assert res.outcome == HTTP_ERROR
    assert "refused" in res.message


def test_timeout_is_http_error(monkeypatch):
    seen = {}

    def _slow(*a, **kw):
        seen["timeout"] = kw.get("timeout")
        raise requests.Timeout("slow")

    monkeypatch.setattr(sinks.requests, "post", _slow)
    res = dispatch(_match(Rule(id="r", type="WebRequest", url="http://x/hook")))
    assert res.outcome == HTTP_ERROR
    assert seen["timeout"] == sinks.DEFAULT_TIMEOUT


@pytest.mark.parametrize("typ", ["SendOverlay", "OutputText"])
def test_placeholder_sinks_succeed_without_side_effect(monkeypatch, typ):
    monkeypatch.setattr(sinks.requests, "post", lambda *a, **kw: pytest.fail("unexpected post"))
    assert dispatch(_match(Rule(id="r", type=typ, url="http://x"))).outcome == SUCCESS


def test_unknown_sink_type_is_invalid_config():
    assert dispatch(_match(Rule(id="r", type="Telepathy"))).outcome == INVALID_CONFIG
