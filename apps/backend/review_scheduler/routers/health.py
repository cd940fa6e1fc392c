from fastapi import APIRouter
from fastapi.responses import JSONResponse
from ..metrics import registry

router = APIRouter()


@router.get("/healthz")
def health_check() -> dict[str, str]:
    """Simple health check endpoint.

    ライブネス/レディネス確認用の簡易エンドポイント。ストアには触れない。
    """
    return {"status": "ok"}


@router.get("/metrics")
def metrics() -> JSONResponse:
    """Return in-memory metrics snapshot.

    パス別の p95/エラー/タイムアウト/件数と、採点結果（quality 別・習得・競合）の件数を返す。
    """
    return JSONResponse(content={"paths": registry.snapshot(), "reviews": registry.review_snapshot()})
