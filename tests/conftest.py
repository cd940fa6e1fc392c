"""Pytest configuration to ensure session-less backend access during tests."""

import os
import tempfile
from datetime import datetime
from zoneinfo import ZoneInfo

import pytest

# Disable session authentication by default so API tests can call endpoints without
# provisioning cookies. Individual tests can override this via monkeypatch when needed.
os.environ.setdefault("DISABLE_SESSION_AUTH", "true")
# Provide a deterministic yet secure-length session secret for tests to satisfy
# 起動時バリデーション。実運用では `.env` で個別に乱数値を設定すること。
os.environ.setdefault("SESSION_SECRET_KEY", "S9kD2fH5jL8pQ1tV4yX7zB0cN3mR6wA9")
# 既定ストアがリポジトリ直下に DB を作らないよう一時ディレクトリへ向ける
os.environ.setdefault(
    "REVIEW_DB_PATH",
    os.path.join(tempfile.mkdtemp(prefix="review-scheduler-"), "review.sqlite3"),
)

# test_api はモジュールを再読み込みするため、ここで先に束縛しておき
# tests/backend 配下の import と同じクラスを使う
from review_scheduler.store.sqlite_store import SQLiteReviewStore  # noqa: E402

TOKYO = ZoneInfo("Asia/Tokyo")


@pytest.fixture
def now() -> datetime:
    """2024-05-01 09:00 Asia/Tokyo: the reference "now" shared by the tests."""

    return datetime(2024, 5, 1, 9, 0, tzinfo=TOKYO)


@pytest.fixture
def sqlite_store(tmp_path) -> SQLiteReviewStore:
    return SQLiteReviewStore(str(tmp_path / "review.sqlite3"))
