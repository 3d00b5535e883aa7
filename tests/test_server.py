import urllib.request
from pathlib import Path

import pytest

from app_tree import REPORT_FILENAME
from app_tree_server import (
    DEFAULT_GRACE_DELAY,
    DeliveryServer,
    ServerState,
    create_app,
    grace_delay_from_env,
)


@pytest.fixture
def staged_report(tmp_path: Path) -> Path:
    path = tmp_path / REPORT_FILENAME
    path.write_bytes(b"\nDIRECTORY: /r\n==========================\n")
    return path


def test_route_serves_report_and_signals(staged_report: Path):
    hits = []
    app = create_app(staged_report, lambda: hits.append(1))

    with app.test_client() as client:
        resp = client.get(f"/{REPORT_FILENAME}")
        body = resp.get_data()
        resp.close()

    assert resp.status_code == 200
    assert resp.mimetype == "text/plain"
    assert body == staged_report.read_bytes()
    assert hits == [1]


def test_other_paths_do_not_count(staged_report: Path):
    hits = []
    app = create_app(staged_report, lambda: hits.append(1))

    with app.test_client() as client:
        assert client.get("/favicon.ico").status_code == 404

    assert hits == []


def test_delivery_server_lifecycle(staged_report: Path):
    server = DeliveryServer(staged_report, grace_delay=0)
    assert server.state is ServerState.IDLE
    assert server.url is None

    url = server.start()
    try:
        assert server.state is ServerState.LISTENING
        assert url == f"http://localhost:{server.port}/{REPORT_FILENAME}"
        assert server.port > 0

        with urllib.request.urlopen(url, timeout=5) as resp:
            body = resp.read()
            content_type = resp.headers.get("Content-Type", "")

        assert body == staged_report.read_bytes()
        assert content_type.startswith("text/plain")
        assert server.wait(timeout=5) is True
        assert server.state is ServerState.SERVED
    finally:
        server.shutdown()

    assert server.state is ServerState.TERMINATED
    # Idempotent.
    server.shutdown()
    assert server.state is ServerState.TERMINATED


def test_start_twice_is_rejected(staged_report: Path):
    server = DeliveryServer(staged_report, grace_delay=0)
    server.start()
    try:
        with pytest.raises(RuntimeError):
            server.start()
    finally:
        server.shutdown()


def test_shutdown_without_request(staged_report: Path):
    server = DeliveryServer(staged_report, grace_delay=5)
    server.start()
    assert server.wait(timeout=0.05) is False

    server.shutdown()

    assert server.state is ServerState.TERMINATED
    assert not server.served.is_set()


def test_serve_once_announces_and_returns_after_first_request(staged_report: Path):
    server = DeliveryServer(staged_report, grace_delay=0)
    bodies = []

    def announce(url):
        # Runs on the caller's thread before it blocks in wait().
        with urllib.request.urlopen(url, timeout=5) as resp:
            bodies.append(resp.read())

    server.serve_once(announce=announce)

    assert bodies == [staged_report.read_bytes()]
    assert server.state is ServerState.TERMINATED


def test_grace_delay_from_env(monkeypatch):
    monkeypatch.delenv("APP_TREE_GRACE_DELAY", raising=False)
    assert grace_delay_from_env() == DEFAULT_GRACE_DELAY

    monkeypatch.setenv("APP_TREE_GRACE_DELAY", "0.25")
    assert grace_delay_from_env() == 0.25

    monkeypatch.setenv("APP_TREE_GRACE_DELAY", "soon")
    assert grace_delay_from_env() == DEFAULT_GRACE_DELAY

    monkeypatch.setenv("APP_TREE_GRACE_DELAY", "-1")
    assert grace_delay_from_env() == DEFAULT_GRACE_DELAY


def test_route_name_is_configurable(tmp_path: Path):
    staged = tmp_path / "staged.txt"
    staged.write_bytes(b"report")
    server = DeliveryServer(staged, grace_delay=0, filename=REPORT_FILENAME)

    with server.app.test_client() as client:
        assert client.get("/staged.txt").status_code == 404
        assert client.get(f"/{REPORT_FILENAME}").get_data() == b"report"

    assert server.served.is_set()
