from __future__ import annotations

import asyncio
from types import SimpleNamespace

import pytest
from itsdangerous import BadSignature
from starlette.requests import Request
from starlette.responses import Response

import review_scheduler.middleware as middleware_module
from review_scheduler.config import settings
from review_scheduler.middleware import RateLimitMiddleware


async def _call_next(_: Request) -> Response:
    return Response("ok", media_type="text/plain")


def _dispatch(middleware: RateLimitMiddleware, request: Request) -> Response:
    return asyncio.run(middleware.dispatch(request, _call_next))


def _make_request(
    *,
    cookie_token: str | None = None,
    header_owner: str | None = None,
    client_ip: str = "198.51.100.10",
) -> Request:
    headers: list[tuple[bytes, bytes]] = []
    if cookie_token is not None:
        cookie_value = f"{settings.session_cookie_name}={cookie_token}"
        headers.append((b"cookie", cookie_value.encode("latin-1")))
    if header_owner is not None:
        headers.append((settings.owner_id_header.lower().encode("latin-1"), header_owner.encode("latin-1")))
    scope = {
        "type": "http",
        "http_version": "1.1",
        "method": "GET",
        "path": "/api/review/due",
        "raw_path": b"/api/review/due",
        "query_string": b"",
        "headers": headers,
        "client": (client_ip, 52314),
        "state": SimpleNamespace(),
    }
    return Request(scope)


def _middleware(*, ip_capacity: int = 100, user_capacity: int = 2, **kwargs) -> RateLimitMiddleware:
    return RateLimitMiddleware(
        app=lambda scope, receive, send: None,
        ip_capacity_per_minute=ip_capacity,
        user_capacity_per_minute=user_capacity,
        **kwargs,
    )


def test_owner_bucket_is_keyed_by_session_cookie(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(settings, "disable_session_auth", False)
    observed_tokens: list[str] = []

    def fake_verify(token: str) -> dict[str, str]:
        observed_tokens.append(token)
        if token != "session-token":
            raise BadSignature("unexpected token")
        return {"sub": "student-123"}

    monkeypatch.setattr(middleware_module, "verify_session_token", fake_verify)
    middleware = _middleware(user_capacity=2)

    responses = [_dispatch(middleware, _make_request(cookie_token="session-token")) for _ in range(3)]

    assert [r.status_code for r in responses] == [200, 200, 429]
    assert observed_tokens == ["session-token"] * 3
    assert responses[0].headers["X-RateLimit-Limit-User"] == "2"
    assert responses[1].headers["X-RateLimit-Remaining-User"] == "0"
    assert responses[2].headers["Retry-After"] == "60"
    assert b'"error":"rate_limited"' in responses[2].body


def test_invalid_session_falls_back_to_ip_bucket(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(settings, "disable_session_auth", False)

    def fake_verify(token: str) -> dict[str, str]:
        raise BadSignature("tampered")

    monkeypatch.setattr(middleware_module, "verify_session_token", fake_verify)
    middleware = _middleware(user_capacity=1)

    responses = [_dispatch(middleware, _make_request(cookie_token="tampered")) for _ in range(3)]

    assert all(r.status_code == 200 for r in responses)
    assert "X-RateLimit-Limit-User" not in responses[0].headers


def test_owner_header_drives_bucket_when_auth_is_disabled(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(settings, "disable_session_auth", True)
    middleware = _middleware(user_capacity=1)

    first = _dispatch(middleware, _make_request(header_owner="student-a"))
    second = _dispatch(middleware, _make_request(header_owner="student-a"))
    other = _dispatch(middleware, _make_request(header_owner="student-b"))

    assert first.status_code == 200
    assert second.status_code == 429
    assert other.status_code == 200


def test_ip_bucket_applies_before_owner_bucket(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(settings, "disable_session_auth", True)
    middleware = _middleware(ip_capacity=1, user_capacity=10)

    assert _dispatch(middleware, _make_request(client_ip="203.0.113.1")).status_code == 200
    blocked = _dispatch(middleware, _make_request(client_ip="203.0.113.1"))
    assert blocked.status_code == 429
    assert b"per IP" in blocked.body
    assert _dispatch(middleware, _make_request(client_ip="203.0.113.2")).status_code == 200


def test_idle_owner_buckets_are_pruned(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(settings, "disable_session_auth", True)
    middleware = _middleware(user_capacity=5, max_user_buckets=2)

    for owner in ("student-1", "student-2", "student-3"):
        _dispatch(middleware, _make_request(header_owner=owner))

    assert list(middleware._user_buckets.keys()) == ["student-2", "student-3"]
