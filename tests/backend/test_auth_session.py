"""署名付きセッション Cookie から所有者IDを解決する処理のテスト。"""

import asyncio

import pytest
from fastapi import HTTPException
from itsdangerous import URLSafeTimedSerializer
from starlette.requests import Request

from review_scheduler import auth
from review_scheduler.config import settings


def _request(headers: dict[str, str] | None = None) -> Request:
    raw_headers = [(k.lower().encode("latin-1"), v.encode("latin-1")) for k, v in (headers or {}).items()]
    scope = {
        "type": "http",
        "method": "GET",
        "path": "/api/review/due",
        "headers": raw_headers,
        "query_string": b"",
        "client": ("203.0.113.5", 1234),
    }
    return Request(scope)


@pytest.fixture
def session_auth_enabled(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(settings, "disable_session_auth", False)
    monkeypatch.setattr(settings, "session_secret_key", "S9kD2fH5jL8pQ1tV4yX7zB0cN3mR6wA9")


def test_valid_cookie_resolves_owner(session_auth_enabled) -> None:
    token = auth.issue_session_token("student-42")
    request = _request({"cookie": f"{settings.session_cookie_name}={token}"})

    owner = asyncio.run(auth.get_current_owner(request))

    assert owner == "student-42"
    assert request.state.owner_id == "student-42"


def test_cookie_is_found_even_when_header_has_malformed_neighbours(session_auth_enabled) -> None:
    token = auth.issue_session_token("student-7")
    request = _request({"cookie": f'g_state={{"i_l":0}}; {settings.session_cookie_name}={token}'})

    assert auth.read_session_cookie(request, settings.session_cookie_name) == token


@pytest.mark.parametrize(
    "cookie,expected_detail",
    [
        (None, "Session cookie is missing"),
        ("not-a-token", "Invalid session token"),
    ],
)
def test_invalid_cookie_is_unauthorized(session_auth_enabled, cookie, expected_detail) -> None:
    headers = {"cookie": f"{settings.session_cookie_name}={cookie}"} if cookie else {}
    with pytest.raises(HTTPException) as excinfo:
        asyncio.run(auth.get_current_owner(_request(headers)))
    assert excinfo.value.status_code == 401
    assert excinfo.value.detail == expected_detail


def test_payload_without_sub_is_rejected(session_auth_enabled) -> None:
    serializer = URLSafeTimedSerializer(settings.session_secret_key, salt="review-scheduler.session")
    token = serializer.dumps({"sid": "x"})
    with pytest.raises(HTTPException) as excinfo:
        asyncio.run(auth.get_current_owner(_request({"cookie": f"{settings.session_cookie_name}={token}"})))
    assert excinfo.value.detail == "Invalid session payload"


def test_disabled_auth_uses_owner_header_or_default(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(settings, "disable_session_auth", True)

    assert asyncio.run(auth.get_current_owner(_request({"X-User-Id": "alice"}))) == "alice"
    assert asyncio.run(auth.get_current_owner(_request())) == settings.default_owner_id
