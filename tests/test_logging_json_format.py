import importlib
import io
import json
from contextlib import contextmanager, redirect_stderr, redirect_stdout

import pytest
from fastapi.testclient import TestClient

_SECRET = "S9kD2fH5jL8pQ1tV4yX7zB0cN3mR6wA9"
_TRACE_ID = "105445aa7843bc8bf206b12000100000"


@contextmanager
def _capture_output():
    """Capture stdout/stderr where the stdlib StreamHandler writes structlog output."""

    buf_out, buf_err = io.StringIO(), io.StringIO()
    with redirect_stdout(buf_out), redirect_stderr(buf_err):
        yield buf_out, buf_err


def _json_lines(*buffers: io.StringIO, strict: bool = True) -> list[dict]:
    records = []
    for buf in buffers:
        for line in buf.getvalue().splitlines():
            line = line.strip()
            if not line:
                continue
            if not strict and not line.startswith("{"):
                continue
            assert line.startswith("{") and line.endswith("}"), line
            records.append(json.loads(line))
    return records


def _modules():
    # test_api が review_scheduler.* を再読み込みするため、その都度最新のモジュールを引く
    config = importlib.import_module("review_scheduler.config")
    log_mod = importlib.import_module("review_scheduler.logging")
    main = importlib.import_module("review_scheduler.main")
    return config, log_mod, main


@pytest.fixture
def patched_settings(monkeypatch: pytest.MonkeyPatch):
    config, _, _ = _modules()
    monkeypatch.setattr(config.settings, "disable_session_auth", True)
    monkeypatch.setattr(config.settings, "session_secret_key", _SECRET)
    monkeypatch.setattr(config.settings, "gcp_project_id", None)
    return config.settings


def test_logs_are_pure_json(patched_settings) -> None:
    _, log_mod, main = _modules()
    with _capture_output() as (out, err):
        app = main.create_app()
        client = TestClient(app)
        assert client.get("/healthz").status_code == 200
        log_mod.logger.info("unit_test_event", foo="bar")

    records = _json_lines(out, err)
    events = [rec.get("event") for rec in records]
    assert "unit_test_event" in events
    assert "request_complete" in events
    for rec in records:
        assert "timestamp" in rec
        assert "level" in rec


def test_request_complete_carries_request_id_and_status(patched_settings) -> None:
    _, _, main = _modules()
    with _capture_output() as (out, err):
        client = TestClient(main.create_app())
        resp = client.get("/healthz", headers={"X-Request-ID": "req-abc-123"})

    assert resp.headers["X-Request-ID"] == "req-abc-123"
    completes = [rec for rec in _json_lines(out, err) if rec.get("event") == "request_complete"]
    assert completes
    last = completes[-1]
    assert last["request_id"] == "req-abc-123"
    assert last["status_code"] == 200
    assert last["path"] == "/healthz"
    assert last["is_error"] is False


def test_sensitive_fields_are_masked(patched_settings) -> None:
    _, log_mod, _ = _modules()
    with _capture_output() as (out, err):
        log_mod.configure_logging()
        log_mod.logger.info(
            "masking_check",
            session_token="abcdefghijklmnop",
            password="short",
            note=f"cookie signed with {_SECRET}",
            nested={"api_key": "sk-1234567890abcdef", "owner_id": "student-1"},
        )

    [record] = [rec for rec in _json_lines(out, err) if rec.get("event") == "masking_check"]
    assert record["session_token"] == "abcd…mnop"
    assert record["password"] == "***"
    assert _SECRET not in record["note"]
    assert "S9kD…6wA9" in record["note"]
    assert record["nested"]["api_key"] == "sk-1…cdef"
    assert record["nested"]["owner_id"] == "student-1"


def test_trace_fields_are_bound_when_project_is_configured(patched_settings, monkeypatch) -> None:
    monkeypatch.setattr(patched_settings, "gcp_project_id", "exam-prep-prod")
    _, _, main = _modules()
    with _capture_output() as (out, err):
        client = TestClient(main.create_app())
        client.get("/healthz", headers={"X-Cloud-Trace-Context": f"{_TRACE_ID}/123456;o=1"})

    [record] = [rec for rec in _json_lines(out, err) if rec.get("event") == "request_complete"]
    assert record["trace"] == f"projects/exam-prep-prod/traces/{_TRACE_ID}"
    assert record["spanId"] == "123456"
    assert record["trace_sampled"] is True


def test_trace_fields_are_omitted_without_project(patched_settings) -> None:
    _, _, main = _modules()
    with _capture_output() as (out, err):
        client = TestClient(main.create_app())
        client.get("/healthz", headers={"X-Cloud-Trace-Context": f"{_TRACE_ID}/123456;o=1"})

    [record] = [rec for rec in _json_lines(out, err) if rec.get("event") == "request_complete"]
    assert "trace" not in record
    assert "spanId" not in record


@pytest.mark.parametrize(
    "header",
    ["", "not-a-trace", f"{_TRACE_ID[:-1]}/1;o=1", f"{_TRACE_ID};o=1"],
)
def test_malformed_trace_header_is_ignored(patched_settings, monkeypatch, header) -> None:
    monkeypatch.setattr(patched_settings, "gcp_project_id", "exam-prep-prod")
    _, _, main = _modules()
    assert main._parse_cloud_trace_header(header) == {}


def test_unhandled_error_is_logged_with_error_context(patched_settings) -> None:
    _, _, main = _modules()
    with _capture_output() as (out, err):
        app = main.create_app()

        @app.get("/boom")
        async def _boom() -> None:
            raise RuntimeError("scheduler exploded")

        client = TestClient(app, raise_server_exceptions=False)
        resp = client.get("/boom")

    assert resp.status_code == 500
    [record] = [
        rec for rec in _json_lines(out, err, strict=False) if rec.get("event") == "request_complete"
    ]
    assert record["is_error"] is True
    assert record["status_code"] == 500
    assert record["error_type"] == "RuntimeError"
    assert record["error_message"] == "scheduler exploded"
    assert record["level"] == "error"


def test_foreign_stdlib_loggers_are_rendered_as_json(patched_settings) -> None:
    import logging

    _, log_mod, _ = _modules()
    with _capture_output() as (out, err):
        log_mod.configure_logging()
        logging.getLogger("httpx").info('HTTP Request: GET http://testserver/healthz "HTTP/1.1 200 OK"')
        logging.getLogger("google.cloud.firestore").warning("retrying %s", "commit")

    records = _json_lines(out, err)
    by_logger = {rec.get("logger"): rec for rec in records}
    assert by_logger["httpx"]["event"].startswith("HTTP Request: GET")
    assert by_logger["httpx"]["level"] == "info"
    assert by_logger["google.cloud.firestore"]["event"] == "retrying commit"
    assert by_logger["google.cloud.firestore"]["level"] == "warning"
    assert all("timestamp" in rec for rec in records)


def _auth_request(cookie_header: str):
    from starlette.requests import Request

    scope = {
        "type": "http",
        "method": "GET",
        "path": "/api/review/due",
        "headers": [(b"cookie", cookie_header.encode("latin-1"))],
        "query_string": b"",
        "client": ("203.0.113.5", 1234),
    }
    return Request(scope)


def test_rejected_session_cookie_is_masked_in_auth_log(patched_settings, monkeypatch) -> None:
    import asyncio

    from fastapi import HTTPException

    monkeypatch.setattr(patched_settings, "disable_session_auth", False)
    _, log_mod, _ = _modules()
    auth = importlib.import_module("review_scheduler.auth")
    token = auth.issue_session_token("student-1")
    tampered = token[:-2] + ("AA" if not token.endswith("AA") else "BB")
    cookie_name = patched_settings.session_cookie_name

    with _capture_output() as (out, err):
        log_mod.configure_logging()
        with pytest.raises(HTTPException):
            asyncio.run(auth.get_current_owner(_auth_request(f"{cookie_name}={tampered}")))

    raw_output = out.getvalue() + err.getvalue()
    assert tampered not in raw_output
    [record] = [rec for rec in _json_lines(out, err) if rec.get("event") == "session_validation_failed"]
    assert record["reason"] == "bad_signature"
    assert record["session_cookie"] == f"{tampered[:4]}…{tampered[-4:]}"


def test_session_values_inside_free_text_are_masked(patched_settings) -> None:
    _, log_mod, _ = _modules()
    auth = importlib.import_module("review_scheduler.auth")
    token = auth.issue_session_token("student-1")
    cookie_name = patched_settings.session_cookie_name

    with _capture_output() as (out, err):
        log_mod.configure_logging()
        log_mod.logger.info(
            "free_text_check",
            detail=f"theme=dark; {cookie_name}={token}; lang=ja",
            hint=f"resend with {token}",
            sid="0f3c9a7e5b2d4c6a8e1f0b3d5c7a9e2f",
            owner_id="student-1",
        )

    raw_output = out.getvalue() + err.getvalue()
    assert token not in raw_output
    [record] = [rec for rec in _json_lines(out, err) if rec.get("event") == "free_text_check"]
    assert record["detail"].startswith("theme=dark; ")
    assert record["detail"].endswith("; lang=ja")
    assert f"{cookie_name}={token[:4]}…{token[-4:]}" in record["detail"]
    assert record["hint"].startswith("resend with ")
    assert record["sid"] == "0f3c…9e2f"
    assert record["owner_id"] == "student-1"
