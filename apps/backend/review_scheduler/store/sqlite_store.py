from __future__ import annotations

import sqlite3
from collections.abc import Sequence
from pathlib import Path

from ..logging import logger
from ..srs.errors import ConcurrencyConflict, ItemNotFound, StoreUnavailable
from ..srs.items import ReviewEvent, ReviewItem
from .common import event_from_record, event_to_record, item_from_record, item_to_record

_ITEM_COLUMNS = (
    "id",
    "owner_id",
    "source_question_ref",
    "subject_ref",
    "topic_ref",
    "interval_days",
    "repetition_count",
    "ease_factor",
    "next_review_date",
    "last_reviewed_at",
    "mastered_at",
    "created_at",
    "version",
)
_EVENT_COLUMNS = (
    "item_id",
    "owner_id",
    "quality",
    "reviewed_at",
    "interval_days",
    "repetition_count",
    "ease_factor",
    "next_review_date",
    "mastered_at",
    "version",
)
_SELECT_ITEM = f"SELECT {', '.join(_ITEM_COLUMNS)} FROM review_items"


def _rollback(conn: sqlite3.Connection) -> None:
    if conn.in_transaction:
        conn.execute("ROLLBACK;")


class SQLiteReviewStore:
    """SQLite-backed review item store.

    - 1 レビュー = 1 トランザクション（BEGIN IMMEDIATE）で item 更新と履歴追記を行う
    - version 列で楽観的排他。期待値と異なる書き込みは ConcurrencyConflict
    - ロック待ちは timeout_ms で打ち切り、StoreUnavailable として再試行を促す
    """

    def __init__(self, db_path: str, *, timeout_ms: int = 5000) -> None:
        self.db_path = db_path
        self.timeout_sec = max(0.001, timeout_ms / 1000)
        self._ensure_dirs()
        self._init_db()

    # --- low-level helpers ---
    def _connect(self, operation: str) -> sqlite3.Connection:
        conn: sqlite3.Connection | None = None
        try:
            conn = sqlite3.connect(
                self.db_path,
                timeout=self.timeout_sec,
                isolation_level=None,
                check_same_thread=False,
            )
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA journal_mode=WAL;")
            conn.execute("PRAGMA foreign_keys=ON;")
        except sqlite3.OperationalError as exc:
            if conn is not None:
                conn.close()
            logger.error("store_unavailable", backend="sqlite", operation=operation, error=str(exc))
            raise StoreUnavailable(operation, str(exc)) from exc
        return conn

    def _ensure_dirs(self) -> None:
        p = Path(self.db_path)
        if p.parent and not p.parent.exists():
            p.parent.mkdir(parents=True, exist_ok=True)

    def _init_db(self) -> None:
        conn = self._connect("init")
        try:
            with conn:
                conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS review_items (
                        id TEXT PRIMARY KEY,
                        owner_id TEXT NOT NULL,
                        source_question_ref TEXT NOT NULL,
                        subject_ref TEXT,
                        topic_ref TEXT,
                        interval_days INTEGER NOT NULL DEFAULT 1 CHECK (interval_days >= 1),
                        repetition_count INTEGER NOT NULL DEFAULT 0 CHECK (repetition_count >= 0),
                        ease_factor REAL NOT NULL DEFAULT 2.5,
                        next_review_date TEXT NOT NULL,
                        last_reviewed_at TEXT,
                        mastered_at TEXT,
                        created_at TEXT NOT NULL,
                        version INTEGER NOT NULL DEFAULT 1,
                        UNIQUE(owner_id, source_question_ref)
                    );
                    """
                )
                conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS review_events (
                        id INTEGER PRIMARY KEY AUTOINCREMENT,
                        item_id TEXT NOT NULL,
                        owner_id TEXT NOT NULL,
                        quality TEXT NOT NULL,
                        reviewed_at TEXT NOT NULL,
                        interval_days INTEGER NOT NULL,
                        repetition_count INTEGER NOT NULL,
                        ease_factor REAL NOT NULL,
                        next_review_date TEXT NOT NULL,
                        mastered_at TEXT,
                        version INTEGER NOT NULL,
                        FOREIGN KEY(item_id) REFERENCES review_items(id) ON DELETE CASCADE
                    );
                    """
                )
                conn.execute("CREATE INDEX IF NOT EXISTS idx_review_items_owner ON review_items(owner_id);")
                conn.execute(
                    "CREATE INDEX IF NOT EXISTS idx_review_items_owner_due "
                    "ON review_items(owner_id, mastered_at, next_review_date);"
                )
                conn.execute("CREATE INDEX IF NOT EXISTS idx_review_events_item ON review_events(item_id);")
        finally:
            conn.close()

    # --- public API ---
    def insert_if_absent(self, items: Sequence[ReviewItem]) -> list[ReviewItem]:
        if not items:
            return []
        placeholders = ", ".join("?" for _ in _ITEM_COLUMNS)
        sql = (
            f"INSERT OR IGNORE INTO review_items({', '.join(_ITEM_COLUMNS)}) "
            f"VALUES ({placeholders});"
        )
        inserted: list[ReviewItem] = []
        conn = self._connect("insert_if_absent")
        try:
            conn.execute("BEGIN IMMEDIATE;")
            for item in items:
                record = item_to_record(item)
                cur = conn.execute(sql, tuple(record[col] for col in _ITEM_COLUMNS))
                if cur.rowcount > 0:
                    inserted.append(item)
            conn.execute("COMMIT;")
            return inserted
        except sqlite3.OperationalError as exc:
            _rollback(conn)
            logger.error("store_unavailable", backend="sqlite", operation="insert_if_absent", error=str(exc))
            raise StoreUnavailable("insert_if_absent", str(exc)) from exc
        except sqlite3.Error:
            _rollback(conn)
            raise
        finally:
            conn.close()

    def get_item(self, item_id: str) -> ReviewItem | None:
        conn = self._connect("get_item")
        try:
            row = conn.execute(f"{_SELECT_ITEM} WHERE id = ?;", (item_id,)).fetchone()
            return item_from_record(dict(row)) if row is not None else None
        except sqlite3.OperationalError as exc:
            raise StoreUnavailable("get_item", str(exc)) from exc
        finally:
            conn.close()

    def list_items(self, owner_id: str) -> list[ReviewItem]:
        conn = self._connect("list_items")
        try:
            cur = conn.execute(
                f"{_SELECT_ITEM} WHERE owner_id = ? ORDER BY created_at ASC, id ASC;",
                (owner_id,),
            )
            return [item_from_record(dict(row)) for row in cur.fetchall()]
        except sqlite3.OperationalError as exc:
            raise StoreUnavailable("list_items", str(exc)) from exc
        finally:
            conn.close()

    def save_review(
        self, item: ReviewItem, *, expected_version: int, event: ReviewEvent
    ) -> ReviewItem:
        record = item_to_record(item)
        event_record = event_to_record(event)
        new_version = expected_version + 1
        conn = self._connect("save_review")
        try:
            # BEGIN IMMEDIATE to avoid concurrent writers on the same row
            conn.execute("BEGIN IMMEDIATE;")
            cur = conn.execute(
                """
                UPDATE review_items
                SET interval_days = ?, repetition_count = ?, ease_factor = ?,
                    next_review_date = ?, last_reviewed_at = ?, mastered_at = ?,
                    version = ?
                WHERE id = ? AND version = ?;
                """,
                (
                    record["interval_days"],
                    record["repetition_count"],
                    record["ease_factor"],
                    record["next_review_date"],
                    record["last_reviewed_at"],
                    record["mastered_at"],
                    new_version,
                    item.id,
                    expected_version,
                ),
            )
            if cur.rowcount == 0:
                row = conn.execute("SELECT version FROM review_items WHERE id = ?;", (item.id,)).fetchone()
                _rollback(conn)
                if row is None:
                    raise ItemNotFound(item.id)
                raise ConcurrencyConflict(
                    item.id,
                    expected_version=expected_version,
                    actual_version=int(row["version"]),
                )
            event_record["version"] = new_version
            conn.execute(
                f"INSERT INTO review_events({', '.join(_EVENT_COLUMNS)}) "
                f"VALUES ({', '.join('?' for _ in _EVENT_COLUMNS)});",
                tuple(event_record[col] for col in _EVENT_COLUMNS),
            )
            conn.execute("COMMIT;")
        except sqlite3.OperationalError as exc:
            _rollback(conn)
            logger.error("store_unavailable", backend="sqlite", operation="save_review", error=str(exc))
            raise StoreUnavailable("save_review", str(exc)) from exc
        except sqlite3.Error:
            _rollback(conn)
            raise
        finally:
            conn.close()

        record["version"] = new_version
        return item_from_record(record)

    def delete_by_source(self, owner_id: str, source_question_ref: str) -> int:
        conn = self._connect("delete_by_source")
        try:
            with conn:
                cur = conn.execute(
                    "DELETE FROM review_items WHERE owner_id = ? AND source_question_ref = ?;",
                    (owner_id, source_question_ref),
                )
                return cur.rowcount
        except sqlite3.OperationalError as exc:
            raise StoreUnavailable("delete_by_source", str(exc)) from exc
        finally:
            conn.close()

    def list_events(self, item_id: str, *, limit: int = 50) -> list[ReviewEvent]:
        conn = self._connect("list_events")
        try:
            cur = conn.execute(
                f"""
                SELECT {', '.join(_EVENT_COLUMNS)}
                FROM review_events
                WHERE item_id = ?
                ORDER BY version DESC, id DESC
                LIMIT ?;
                """,
                (item_id, max(0, int(limit))),
            )
            return [event_from_record(dict(row)) for row in cur.fetchall()]
        except sqlite3.OperationalError as exc:
            raise StoreUnavailable("list_events", str(exc)) from exc
        finally:
            conn.close()
