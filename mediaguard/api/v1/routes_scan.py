# mediaguard/api/v1/routes_scan.py
from fastapi import APIRouter, Depends, HTTPException, status

from mediaguard.core.schemas import PerformanceReport, ScanRequest, ScanResponse
from mediaguard.services.explanation import generate_explanation
from mediaguard.services.scheduler import ScanScheduler, get_scheduler

router = APIRouter(tags=["scan"])


@router.post("/scan", response_model=ScanResponse)
async def scan_media(
    req: ScanRequest,
    scheduler: ScanScheduler = Depends(get_scheduler),
):
    if not req.url or not req.url.strip():
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="No media URL provided.",
        )

    # 1. Run the budgeted scan (never raises)
    result = await scheduler.scan(req.url.strip(), element=req.element, budget_ms=req.budgetMs)

    # 2. Human-readable summary
    explanation = generate_explanation(
        verdict=result.verdict,
        confidence=result.confidence,
        reasons=result.reasons,
        url=result.url,
        status=result.status,
    )

    extra = {
        "tasks": [t.model_dump() for t in result.tasks],
        "validation": result.validation.model_dump() if result.validation else None,
        "loopAnalysis": result.loop_analysis.model_dump() if result.loop_analysis else None,
        "imageAnalysis": result.image_analysis.model_dump() if result.image_analysis else None,
    }

    record = result.to_record()
    return ScanResponse(
        verdict=record["verdict"],
        confidence=record["confidence"],
        status=result.status,
        signals=record["signals"],
        reasons=record["reasons"],
        scanTime=record["scanTime"],
        bytesDownloaded=record["bytesDownloaded"],
        error=result.error,
        explanation=explanation,
        extra=extra,
    )


@router.get("/performance", response_model=PerformanceReport)
async def performance_report(scheduler: ScanScheduler = Depends(get_scheduler)):
    return scheduler.get_performance_report()
