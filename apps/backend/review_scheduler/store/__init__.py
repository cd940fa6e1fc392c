from __future__ import annotations

import os
from functools import lru_cache

from google.cloud import firestore

from ..config import Settings, settings
from ..logging import logger
from .common import ReviewItemStore
from .firestore_store import FirestoreReviewStore
from .sqlite_store import SQLiteReviewStore

_DEFAULT_EMULATOR_HOST = "127.0.0.1:8080"


def _normalize_emulator_host(raw_host: str | None) -> str | None:
    """FIRESTORE_EMULATOR_HOST で受け取ったホスト文字列を正規化する。

    スキームなしの `localhost:8080` でもクライアントオプションに渡せるよう、
    http:// を自動付与する。空文字や None は未設定として扱う。
    """

    host = (raw_host or "").strip()
    if not host:
        return None
    if host.startswith(("http://", "https://")):
        return host
    return f"http://{host}"


def _build_firestore_client(cfg: Settings) -> firestore.Client:
    """Firestore クライアントを構築する。

    - FIRESTORE_EMULATOR_HOST が指定されていればエミュレータ向けのエンドポイントを使用。
    - 開発モードではホスト未指定でも 127.0.0.1:8080 のエミュレータを優先。
    - それ以外は Cloud Firestore へ接続する。
    """

    environment_name = (cfg.environment or "").strip().lower()
    emulator_host = _normalize_emulator_host(
        cfg.firestore_emulator_host
        or os.environ.get("FIRESTORE_EMULATOR_HOST")
        or (_DEFAULT_EMULATOR_HOST if environment_name != "production" else None)
    )
    project_id = cfg.firestore_project_id or cfg.gcp_project_id
    if emulator_host:
        os.environ.setdefault(
            "FIRESTORE_EMULATOR_HOST",
            emulator_host.replace("http://", "").replace("https://", ""),
        )
        return firestore.Client(project=project_id, client_options={"api_endpoint": emulator_host})
    return firestore.Client(project=project_id)


def create_store(cfg: Settings = settings) -> ReviewItemStore:
    """Build the review store selected by STORE_BACKEND."""

    if cfg.store_backend == "firestore":
        logger.info("review_store_init", backend="firestore", project_id=cfg.firestore_project_id)
        return FirestoreReviewStore(_build_firestore_client(cfg), timeout_ms=cfg.store_timeout_ms)
    logger.info("review_store_init", backend="sqlite", db_path=cfg.review_db_path)
    return SQLiteReviewStore(cfg.review_db_path, timeout_ms=cfg.store_timeout_ms)


@lru_cache(maxsize=1)
def get_store() -> ReviewItemStore:
    """Return the process-wide store, created on first use."""

    return create_store(settings)


__all__ = [
    "FirestoreReviewStore",
    "ReviewItemStore",
    "SQLiteReviewStore",
    "create_store",
    "get_store",
]
