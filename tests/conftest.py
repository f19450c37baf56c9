import pytest


@pytest.fixture(autouse=True)
def _isolated_state_dir(tmp_path, monkeypatch):
    # keep sink counters out of the working tree
    monkeypatch.setenv("VRCLOG_CONNECTOR_STATE_DIR", str(tmp_path / ".state"))


@pytest.fixture(autouse=True)
def _no_proxy(monkeypatch):
    # webhook tests talk to a local server
    for var in ("HTTP_PROXY", "HTTPS_PROXY", "ALL_PROXY", "http_proxy", "https_proxy", "all_proxy"):
        monkeypatch.delenv(var, raising=False)
