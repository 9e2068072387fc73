import importlib.util
import os

import pytest
from requests.exceptions import ConnectionError

SCRIPT = os.path.join(os.path.dirname(__file__), "..", "scripts", "smoke_check.py")


@pytest.fixture
def smoke():
    spec = importlib.util.spec_from_file_location("smoke_check", SCRIPT)
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


class FakeResp:
    def __init__(self, status_code, body):
        self.status_code = status_code
        self._body = body

    def json(self):
        return self._body


def test_smoke_check_passes(smoke, monkeypatch):
    answers = {"/api/health": FakeResp(200, {"status": "ok"}), "/api/test-db": FakeResp(200, {"rows": 1})}
    monkeypatch.setattr(smoke, "_get", lambda path, timeout=15: answers[path])
    assert smoke.run_smoke_check(delay=0) is True


def test_smoke_check_retries_then_fails(smoke, monkeypatch):
    calls = []

    def flaky(path, timeout=15):
        calls.append(path)
        raise ConnectionError("refused")

    monkeypatch.setattr(smoke, "_get", flaky)
    monkeypatch.setattr(smoke.time, "sleep", lambda s: None)
    assert smoke.run_smoke_check(max_retries=3, delay=0) is False
    assert calls == ["/api/health"] * 3


def test_smoke_check_reports_db_error(smoke, monkeypatch):
    answers = {
        "/api/health": FakeResp(200, {"status": "ok"}),
        "/api/test-db": FakeResp(500, {"error": "relation does not exist"}),
    }
    monkeypatch.setattr(smoke, "_get", lambda path, timeout=15: answers[path])
    monkeypatch.setattr(smoke.time, "sleep", lambda s: None)
    assert smoke.run_smoke_check(max_retries=2, delay=0) is False


class HtmlResp(FakeResp):
    def json(self):
        raise ValueError("Expecting value: line 1 column 1 (char 0)")


def test_smoke_check_survives_html_error_page(smoke, monkeypatch, capsys):
    answers = {
        "/api/health": FakeResp(200, {"status": "ok"}),
        "/api/test-db": HtmlResp(404, None),
    }
    monkeypatch.setattr(smoke, "_get", lambda path, timeout=15: answers[path])
    assert smoke.run_smoke_check(delay=0) is False
    assert "HTTP 404" in capsys.readouterr().out


def test_smoke_check_health_html_is_a_failure(smoke, monkeypatch):
    monkeypatch.setattr(smoke, "_get", lambda path, timeout=15: HtmlResp(200, None))
    assert smoke.run_smoke_check(delay=0) is False
