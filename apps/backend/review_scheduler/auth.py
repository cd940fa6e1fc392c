from __future__ import annotations

import uuid
from datetime import UTC, datetime

from fastapi import HTTPException, Request, status
from itsdangerous import BadSignature, SignatureExpired, URLSafeTimedSerializer

from .config import settings
from .logging import logger

_SESSION_SALT = "review-scheduler.session"


def _build_serializer() -> URLSafeTimedSerializer:
    """Construct a serializer for signing and verifying session tokens."""

    secret = settings.session_secret_key.strip()
    if not secret:
        raise RuntimeError("SESSION_SECRET_KEY is not configured")
    return URLSafeTimedSerializer(secret, salt=_SESSION_SALT)


def _session_max_age() -> int:
    return max(60, settings.session_max_age_seconds or 60 * 60 * 24 * 14)


def issue_session_token(owner_id: str) -> str:
    """Generate a signed session token whose ``sub`` is the owner id."""

    serializer = _build_serializer()
    payload = {
        "sid": uuid.uuid4().hex,
        "sub": owner_id,
        "issued_at": datetime.now(UTC).replace(microsecond=0).isoformat(),
    }
    return serializer.dumps(payload)


def verify_session_token(token: str) -> dict:
    """Decode a signed session token and return the embedded payload."""

    serializer = _build_serializer()
    return serializer.loads(token, max_age=_session_max_age())


def _session_log_context(
    request: Request, *, reason: str, owner_id: str | None, session_cookie: str | None = None
) -> dict[str, object]:
    """AccessLog と同じキーでセッション検証失敗の理由を記録するためのコンテキスト。"""

    client_ip = request.client.host if request.client else "unknown"
    return {
        "owner_id": owner_id,
        "reason": reason,
        "path": request.url.path,
        "client_ip": client_ip,
        "user_agent": request.headers.get("user-agent"),
        "request_id": getattr(request.state, "request_id", None),
        # 値は logging.mask_sensitive_fields で先頭・末尾4文字以外が伏せられる
        "session_cookie": session_cookie,
    }


def read_session_cookie(request: Request, cookie_name: str) -> str | None:
    """Read the session cookie, falling back to a manual parse of the raw header.

    他サービスの Cookie が RFC 非準拠な値を含むと ``request.cookies`` が空になることがあるため、
    その場合は `;` 区切りの生ヘッダーから目的の Cookie だけを取り出す。
    """

    value = request.cookies.get(cookie_name)
    if value:
        return value

    raw_header = request.headers.get("cookie")
    if not raw_header:
        return None
    for part in raw_header.split(";"):
        part = part.strip()
        if not part or "=" not in part:
            continue
        name, raw_value = part.split("=", 1)
        if name.strip() == cookie_name:
            return raw_value.strip()
    return None


def _unauthorized(
    request: Request, reason: str, detail: str, *, session_cookie: str | None = None
) -> HTTPException:
    logger.warning(
        "session_validation_failed",
        **_session_log_context(request, reason=reason, owner_id=None, session_cookie=session_cookie),
    )
    return HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=detail)


async def get_current_owner(request: Request) -> str:
    """Resolve the owner of the request and attach it to ``request.state``.

    - セッション認証が有効な場合: 署名付き Cookie の ``sub`` を所有者IDとして扱う。
    - DISABLE_SESSION_AUTH=true の場合: ヘッダ（既定 X-User-Id）か既定所有者IDを使う。
    """

    if settings.disable_session_auth:
        header_value = (request.headers.get(settings.owner_id_header) or "").strip()
        owner_id = header_value or settings.default_owner_id
        request.state.owner_id = owner_id
        return owner_id

    raw_token = read_session_cookie(request, settings.session_cookie_name or "rs_session")
    if not raw_token:
        raise _unauthorized(request, "missing_cookie", "Session cookie is missing")

    try:
        payload = verify_session_token(raw_token)
    except SignatureExpired as exc:
        raise _unauthorized(request, "expired", "Session expired", session_cookie=raw_token) from exc
    except BadSignature as exc:
        raise _unauthorized(
            request, "bad_signature", "Invalid session token", session_cookie=raw_token
        ) from exc
    except RuntimeError as exc:
        logger.error(
            "session_validation_failed",
            **_session_log_context(request, reason="configuration_error", owner_id=None),
        )
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Session configuration error",
        ) from exc

    sub = payload.get("sub") if isinstance(payload, dict) else None
    if not isinstance(sub, str) or not sub.strip():
        raise _unauthorized(request, "missing_sub", "Invalid session payload", session_cookie=raw_token)

    request.state.owner_id = sub
    return sub
