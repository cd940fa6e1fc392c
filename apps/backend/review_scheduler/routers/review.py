from functools import partial

import anyio  # オフロード用
from fastapi import APIRouter, Depends, Query

from ..auth import get_current_owner
from ..clock import zone_clock
from ..config import settings
from ..metrics import registry
from ..models.review import (
    DeleteBySourceResponse,
    DueBatchResponse,
    EnqueueRequest,
    EnqueueResponse,
    PreviewOutcomeResponse,
    ReviewEventResponse,
    ReviewHistoryResponse,
    ReviewItemResponse,
    ReviewPreviewResponse,
    ReviewStatsResponse,
    SubmitReviewRequest,
)
from ..srs.items import ReviewSource
from ..srs.scheduling import parse_quality
from ..srs.session import ReviewSession
from ..store import get_store

router = APIRouter(tags=["review"])


def get_review_session() -> ReviewSession:
    """Build the controller for one request from the process-wide store and settings."""

    return ReviewSession(
        get_store(),
        policy=settings.schedule_policy(),
        clock=zone_clock(settings.review_timezone),
    )


@router.get("/due", response_model=DueBatchResponse, summary="本日の復習アイテムと統計を取得")
async def review_due(
    limit: int | None = Query(default=None, ge=1, le=500, description="取得件数上限（未指定なら設定値）"),
    owner_id: str = Depends(get_current_owner),
    session: ReviewSession = Depends(get_review_session),
) -> DueBatchResponse:
    """Return the items due today (overdue first, weakest first) with stats.

    統計は出題バッチと同じスナップショット・同じ「今日」から算出する。
    """
    effective_limit = limit if limit is not None else settings.due_batch_limit
    # anyio.to_thread.run_sync はキーワード引数を転送しないため partial で包む
    batch = await anyio.to_thread.run_sync(partial(session.start, owner_id, limit=effective_limit))
    return DueBatchResponse(
        today=batch.today,
        items=[ReviewItemResponse.from_item(item) for item in batch.items],
        stats=ReviewStatsResponse.from_stats(batch.stats),
    )


@router.get("/stats", response_model=ReviewStatsResponse, summary="進捗統計（今日の件数/未習得/習得済み）")
async def review_stats(
    owner_id: str = Depends(get_current_owner),
    session: ReviewSession = Depends(get_review_session),
) -> ReviewStatsResponse:
    stats = await anyio.to_thread.run_sync(session.stats, owner_id)
    return ReviewStatsResponse.from_stats(stats)


@router.post("/submit", response_model=ReviewItemResponse, summary="採点して次回出題日を更新")
async def review_submit(
    req: SubmitReviewRequest,
    owner_id: str = Depends(get_current_owner),
    session: ReviewSession = Depends(get_review_session),
) -> ReviewItemResponse:
    """Apply easy / hard / wrong to one item and return its persisted state.

    - 不正な quality は 400（状態は一切読まない・書かない）
    - 未知・他人のアイテムは 404
    - expected_version の不一致や同時更新は 409（再取得して再送する）
    """
    submission = await anyio.to_thread.run_sync(
        partial(
            session.submit,
            owner_id,
            req.item_id,
            req.quality,
            expected_version=req.expected_version,
        )
    )
    registry.record_review(f"quality:{parse_quality(req.quality).value}")
    if submission.newly_mastered:
        registry.record_review("mastered")
    elif submission.reentered:
        registry.record_review("reentered")
    return ReviewItemResponse.from_item(submission.item)


@router.get(
    "/items/{item_id}/preview",
    response_model=ReviewPreviewResponse,
    summary="各評価を選んだ場合の次回出題日を試算",
)
async def review_preview(
    item_id: str,
    owner_id: str = Depends(get_current_owner),
    session: ReviewSession = Depends(get_review_session),
) -> ReviewPreviewResponse:
    preview = await anyio.to_thread.run_sync(session.preview, owner_id, item_id)
    return ReviewPreviewResponse(
        item=ReviewItemResponse.from_item(preview.item),
        today=preview.today,
        outcomes=[PreviewOutcomeResponse.from_outcome(outcome) for outcome in preview.outcomes],
    )


@router.get(
    "/items/{item_id}/history",
    response_model=ReviewHistoryResponse,
    summary="アイテムの採点履歴（新しい順）",
)
async def review_history(
    item_id: str,
    limit: int = Query(default=50, ge=1, le=200, description="取得件数上限"),
    owner_id: str = Depends(get_current_owner),
    session: ReviewSession = Depends(get_review_session),
) -> ReviewHistoryResponse:
    events = await anyio.to_thread.run_sync(partial(session.history, owner_id, item_id, limit=limit))
    return ReviewHistoryResponse(
        item_id=item_id,
        events=[ReviewEventResponse.from_event(event) for event in events],
    )


@router.put("/items", response_model=EnqueueResponse, summary="誤答した問題を復習キューへ登録")
async def review_enqueue(
    req: EnqueueRequest,
    owner_id: str = Depends(get_current_owner),
    session: ReviewSession = Depends(get_review_session),
) -> EnqueueResponse:
    sources = [
        ReviewSource(
            source_question_ref=src.source_question_ref,
            subject_ref=src.subject_ref,
            topic_ref=src.topic_ref,
        )
        for src in req.sources
    ]
    result = await anyio.to_thread.run_sync(session.enqueue, owner_id, sources)
    return EnqueueResponse(
        added=[ReviewItemResponse.from_item(item) for item in result.added],
        already_exists=result.already_exists,
    )


@router.delete(
    "/sources/{source_question_ref:path}",
    response_model=DeleteBySourceResponse,
    summary="元の誤答記録の削除に合わせて復習アイテムを削除",
)
async def review_delete_by_source(
    source_question_ref: str,
    owner_id: str = Depends(get_current_owner),
    session: ReviewSession = Depends(get_review_session),
) -> DeleteBySourceResponse:
    deleted = await anyio.to_thread.run_sync(session.remove_for_source, owner_id, source_question_ref)
    return DeleteBySourceResponse(deleted=deleted)
