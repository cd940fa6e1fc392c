from __future__ import annotations

import hashlib
from collections.abc import Iterable, Iterator, Mapping, Sequence
from typing import Any

from google.api_core import exceptions as gexc
from google.api_core.exceptions import AlreadyExists
from google.cloud import firestore

from ..logging import logger
from ..srs.errors import ConcurrencyConflict, ItemNotFound, StoreUnavailable
from ..srs.items import ReviewEvent, ReviewItem
from .common import event_from_record, event_to_record, item_from_record, item_to_record

_TRANSIENT_ERRORS = (gexc.GoogleAPICallError, gexc.RetryError)


def _coerce_firestore_snapshot(
    candidate: Any,
) -> firestore.DocumentSnapshot | None:
    """Normalize Firestore transaction.get results (snapshot or generator) into a snapshot."""

    if candidate is None:
        return None
    if hasattr(candidate, "exists"):
        return candidate  # type: ignore[return-value]
    if isinstance(candidate, Iterator):
        return next(candidate, None)
    if isinstance(candidate, Iterable) and not isinstance(candidate, (str, bytes, Mapping)):
        iterator = iter(candidate)
        return next(iterator, None)
    return None


def _source_key(owner_id: str, source_question_ref: str) -> str:
    """(owner, source) の一意キー。source 参照に '/' が含まれてもパスにならないようハッシュ化する。"""

    digest = hashlib.sha256(f"{owner_id}\x00{source_question_ref}".encode("utf-8")).hexdigest()
    return f"src:{digest}"


def _rollback(transaction: Any) -> None:
    if getattr(transaction, "in_progress", False):
        transaction._rollback()


class FirestoreReviewStore:
    """Firestore 版の ReviewItem ストア。

    - review_items: 1 ドキュメント = 1 ReviewItem（doc id = item id）
    - review_sources: (owner, source) の一意制約を create() の AlreadyExists で表現
    - review_events: レビュー履歴。item 更新と同一トランザクションで書き込む
    """

    def __init__(self, client: firestore.Client, *, timeout_ms: int = 5000) -> None:
        self._client = client
        self._timeout = max(0.001, timeout_ms / 1000)
        self._items = client.collection("review_items")
        self._sources = client.collection("review_sources")
        self._events = client.collection("review_events")

    def _unavailable(self, operation: str, exc: Exception) -> StoreUnavailable:
        logger.error(
            "store_unavailable",
            backend="firestore",
            operation=operation,
            error=str(exc),
            error_class=exc.__class__.__name__,
        )
        return StoreUnavailable(operation, f"{exc.__class__.__name__}: {exc}")

    def insert_if_absent(self, items: Sequence[ReviewItem]) -> list[ReviewItem]:
        inserted: list[ReviewItem] = []
        for item in items:
            source_ref = self._sources.document(_source_key(item.owner_id, item.source_question_ref))
            batch = self._client.batch()
            # source を先に create し、重複時は item ごと書き込まれない
            batch.create(
                source_ref,
                {
                    "owner_id": item.owner_id,
                    "source_question_ref": item.source_question_ref,
                    "item_id": item.id,
                },
            )
            batch.create(self._items.document(item.id), item_to_record(item))
            try:
                batch.commit(timeout=self._timeout)
            except AlreadyExists:
                continue
            except _TRANSIENT_ERRORS as exc:
                raise self._unavailable("insert_if_absent", exc) from exc
            inserted.append(item)
        return inserted

    def get_item(self, item_id: str) -> ReviewItem | None:
        try:
            snapshot = self._items.document(item_id).get(timeout=self._timeout)
        except _TRANSIENT_ERRORS as exc:
            raise self._unavailable("get_item", exc) from exc
        if not snapshot.exists:
            return None
        return item_from_record(snapshot.to_dict() or {}, item_id=snapshot.id)

    def list_items(self, owner_id: str) -> list[ReviewItem]:
        query = self._items.where("owner_id", "==", owner_id)
        try:
            snapshots = list(query.stream(timeout=self._timeout))
        except _TRANSIENT_ERRORS as exc:
            raise self._unavailable("list_items", exc) from exc
        items = [item_from_record(snap.to_dict() or {}, item_id=snap.id) for snap in snapshots]
        items.sort(key=lambda it: (it.created_at, it.id))
        return items

    def save_review(
        self, item: ReviewItem, *, expected_version: int, event: ReviewEvent
    ) -> ReviewItem:
        record = item_to_record(item)
        new_version = expected_version + 1
        record["version"] = new_version
        event_record = event_to_record(event)
        event_record["version"] = new_version
        item_ref = self._items.document(item.id)
        event_ref = self._events.document(f"{item.id}:{new_version}")

        transaction = self._client.transaction()
        try:
            transaction._begin()
        except _TRANSIENT_ERRORS as exc:
            raise self._unavailable("save_review", exc) from exc

        try:
            snapshot = _coerce_firestore_snapshot(transaction.get(item_ref, timeout=self._timeout))
            if snapshot is None or not snapshot.exists:
                _rollback(transaction)
                raise ItemNotFound(item.id)
            stored_version = int((snapshot.to_dict() or {}).get("version") or 0)
            if stored_version != expected_version:
                _rollback(transaction)
                raise ConcurrencyConflict(
                    item.id,
                    expected_version=expected_version,
                    actual_version=stored_version,
                )
            transaction.update(
                item_ref,
                {
                    "interval_days": record["interval_days"],
                    "repetition_count": record["repetition_count"],
                    "ease_factor": record["ease_factor"],
                    "next_review_date": record["next_review_date"],
                    "last_reviewed_at": record["last_reviewed_at"],
                    "mastered_at": record["mastered_at"],
                    "version": new_version,
                },
            )
            transaction.set(event_ref, event_record)
            transaction._commit()
        except gexc.Aborted as exc:
            # 他トランザクションと競合してコミットが中断された
            _rollback(transaction)
            logger.warning("firestore_review_aborted", item_id=item.id, error=str(exc))
            raise ConcurrencyConflict(
                item.id, expected_version=expected_version, actual_version=None
            ) from exc
        except _TRANSIENT_ERRORS as exc:
            _rollback(transaction)
            raise self._unavailable("save_review", exc) from exc

        return item_from_record(record)

    def delete_by_source(self, owner_id: str, source_question_ref: str) -> int:
        query = self._items.where("owner_id", "==", owner_id).where(
            "source_question_ref", "==", source_question_ref
        )
        try:
            item_snapshots = list(query.stream(timeout=self._timeout))
            batch = self._client.batch()
            for snapshot in item_snapshots:
                for event_snapshot in self._events.where("item_id", "==", snapshot.id).stream(
                    timeout=self._timeout
                ):
                    batch.delete(event_snapshot.reference)
                batch.delete(snapshot.reference)
            batch.delete(self._sources.document(_source_key(owner_id, source_question_ref)))
            batch.commit(timeout=self._timeout)
        except _TRANSIENT_ERRORS as exc:
            raise self._unavailable("delete_by_source", exc) from exc
        return len(item_snapshots)

    def list_events(self, item_id: str, *, limit: int = 50) -> list[ReviewEvent]:
        try:
            snapshots = list(self._events.where("item_id", "==", item_id).stream(timeout=self._timeout))
        except _TRANSIENT_ERRORS as exc:
            raise self._unavailable("list_events", exc) from exc
        events = [event_from_record(snap.to_dict() or {}) for snap in snapshots]
        events.sort(key=lambda ev: ev.version, reverse=True)
        return events[: max(0, int(limit))]
