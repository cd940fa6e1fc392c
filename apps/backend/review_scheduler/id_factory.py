"""ID 生成ユーティリティ。

ReviewItem の ID は Firestore のドキュメントパスにもそのまま使えるよう、
prefix "ri:" + UUID hex のみで構成する。
"""

from __future__ import annotations

import uuid


def generate_review_item_id() -> str:
    """Return a new opaque review item identifier."""

    return f"ri:{uuid.uuid4().hex}"
