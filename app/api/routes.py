import logging

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import Response

from app.api.dependencies import get_country_resolver, get_repository, require_internal_job_token
from app.config import get_settings
from app.models.schemas import ChartDataOut, DashboardStatsOut, EntryDetailOut, EntryOut, IngestJobOut
from app.services.errors import MalformedPayloadError
from app.services.ingest_service import ingest_payload
from app.services.summary_view import SummaryView

router = APIRouter(prefix="/api/v1", tags=["v1"])
logger = logging.getLogger(__name__)


@router.get("/dashboard/stats", response_model=DashboardStatsOut)
def get_dashboard_stats(repo=Depends(get_repository)):
    view = SummaryView(repo.list_recent_summaries(get_settings().summary_history_limit))
    return view.build_dashboard_stats(last_update=repo.fetch_last_update())


@router.get("/dashboard/chart-data", response_model=ChartDataOut)
def get_chart_data(
    limit: int | None = Query(default=None, ge=1, le=100),
    repo=Depends(get_repository),
):
    history_limit = limit or get_settings().summary_history_limit
    view = SummaryView(repo.list_recent_summaries(history_limit))
    return view.build_chart_data(history_limit)


@router.get("/entries", response_model=list[EntryOut])
def list_entries(repo=Depends(get_repository)):
    return [EntryOut(**row) for row in repo.fetch_entries()]


@router.get("/entries/{entry_id}", response_model=EntryDetailOut)
def get_entry(entry_id: int, repo=Depends(get_repository)):
    entry = repo.fetch_entry(entry_id)
    if entry is None:
        raise HTTPException(status_code=404, detail="entry not found")
    return EntryDetailOut(**entry)


@router.get("/entries/{entry_id}/download")
def download_entry(entry_id: int, repo=Depends(get_repository)):
    row = repo.fetch_raw_payload(entry_id)
    if row is None:
        raise HTTPException(status_code=404, detail="entry not found")
    return Response(
        content=row["raw_text"],
        media_type="application/json",
        headers={"Content-Disposition": f'attachment; filename="data_{entry_id}.json"'},
    )


@router.post("/jobs/run-ingest", response_model=IngestJobOut)
async def run_ingest_job(
    request: Request,
    source: str | None = Query(default=None, min_length=1),
    _=Depends(require_internal_job_token),
    repo=Depends(get_repository),
    resolver=Depends(get_country_resolver),
):
    raw_body = await request.body()
    source_url = source or "manual-upload"
    try:
        result = ingest_payload(raw_body, source_url, repo, resolver=resolver, source_id=source)
    except MalformedPayloadError as exc:
        logger.warning("run_ingest_rejected source=%s error=%s", source_url, exc)
        raise HTTPException(status_code=422, detail=str(exc)) from exc

    return IngestJobOut(
        raw_payload_id=result.raw_payload_id,
        summary_id=result.summary_id,
        source=result.summary.source,
        total=result.summary.total,
        region_count=len(result.summary.by_region),
        nationality_count=len(result.summary.nationality_breakdown),
        created_at=result.created_at,
    )
