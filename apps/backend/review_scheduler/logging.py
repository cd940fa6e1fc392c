"""Structured JSON logging for the review scheduler.

structlog のイベントと標準 logging 経由のログ（uvicorn / httpx / google-cloud など）を
同じ ``ProcessorFormatter`` に通し、1 行 1 JSON で出力する。
署名付きセッション Cookie・セッションID・署名鍵はレンダリング前にマスクする。
"""

from __future__ import annotations

import logging
import re
from typing import Any

import structlog
from structlog import contextvars as structlog_contextvars
from structlog.types import EventDict, Processor, WrappedLogger

from .config import settings

_MASK_PLACEHOLDER = "***"
_SENSITIVE_KEY_PARTS = ("secret", "token", "password", "authorization", "cookie", "api_key")
# 完全一致で判定するセッション識別子のキー
_SENSITIVE_KEYS = frozenset({"sid", "session", "session_id"})
# itsdangerous の URLSafeTimedSerializer 形式: payload.timestamp.signature
_SIGNED_TOKEN_RE = re.compile(r"[A-Za-z0-9_\-]{8,}\.[A-Za-z0-9_\-]{4,}\.[A-Za-z0-9_\-]{16,}")


def _mask_secret_value(raw: object) -> str:
    """Keep the first/last four characters of long values, hide short ones entirely."""

    if raw is None:
        return _MASK_PLACEHOLDER
    text = str(raw).strip()
    if len(text) <= 8:
        return _MASK_PLACEHOLDER
    return f"{text[:4]}…{text[-4:]}"


def _is_sensitive_key(key: str) -> bool:
    lowered = key.lower()
    return lowered in _SENSITIVE_KEYS or any(part in lowered for part in _SENSITIVE_KEY_PARTS)


def _cookie_assignment_pattern(cookie_name: str) -> re.Pattern[str]:
    return re.compile(rf"(?<![\w-]){re.escape(cookie_name)}=([^;\s\"']+)")


def _scrub_text(text: str, known_secrets: tuple[str, ...], cookie_name: str) -> str:
    """Mask secrets hidden inside free text (messages, raw headers, error details)."""

    for secret in known_secrets:
        text = text.replace(secret, _mask_secret_value(secret))
    if cookie_name:
        text = _cookie_assignment_pattern(cookie_name).sub(
            lambda m: f"{cookie_name}={_mask_secret_value(m.group(1))}", text
        )
    return _SIGNED_TOKEN_RE.sub(lambda m: _mask_secret_value(m.group(0)), text)


def mask_sensitive_fields(
    logger: WrappedLogger,
    method_name: str,
    event_dict: EventDict,
) -> EventDict:
    """Mask session cookies, session ids and the signing key before rendering.

    - キー名が secret / token / cookie 等を含む、または sid / session_id の値は丸ごとマスク
    - 文字列中の ``<session_cookie_name>=<値>`` と署名付きトークンはその部分だけマスク
    - 署名鍵のリテラルはどのフィールドに紛れ込んでもマスク
    """

    known_secrets = tuple(s for s in (settings.session_secret_key.strip(),) if s)
    cookie_name = settings.session_cookie_name or ""

    def _sanitize(value: Any, key_hint: str | None) -> Any:
        if isinstance(value, dict):
            return {k: _sanitize(v, str(k)) for k, v in value.items()}
        if isinstance(value, (list, tuple)):
            return [_sanitize(v, key_hint) for v in value]
        sensitive = bool(key_hint) and _is_sensitive_key(key_hint)
        if isinstance(value, str):
            cleaned = _scrub_text(value, known_secrets, cookie_name)
            return _mask_secret_value(value) if sensitive else cleaned
        if sensitive:
            return _mask_secret_value(value)
        return value

    for key in list(event_dict.keys()):
        if key.startswith("_"):
            # ProcessorFormatter のメタ情報（_record 等）
            continue
        event_dict[key] = _sanitize(event_dict[key], key)
    return event_dict


def _shared_processors() -> list[Processor]:
    return [
        structlog_contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        mask_sensitive_fields,
    ]


def configure_logging(level: int = logging.INFO) -> None:
    """Route structlog and stdlib loggers through one JSON formatter.

    標準 logging のルートに ``ProcessorFormatter`` 付きハンドラを 1 つだけ設定し直す。
    structlog 以外のロガーも ``foreign_pre_chain`` で同じタイムスタンプ・レベル・マスクを通る。
    """

    shared = _shared_processors()
    formatter = structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=[*shared, structlog.stdlib.add_logger_name],
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ],
    )
    handler = logging.StreamHandler()
    handler.setFormatter(formatter)
    logging.basicConfig(level=level, handlers=[handler], force=True)

    structlog.configure(
        processors=[
            *shared,
            structlog.processors.StackInfoRenderer(),
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
    )


logger = structlog.get_logger()
