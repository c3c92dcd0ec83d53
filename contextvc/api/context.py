"""Business context API endpoints.

Endpoints are thin. VersionControlEngine handles the full lifecycle
(commit, current tracking, temporal reads, diff, rollback) as a deep
module. Errors propagate as ContextVCException and are rendered by the
shared exception handler.
"""

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session
from typing import List, Optional

from ..database import get_db
from ..schemas.stats import StatsResponse
from ..schemas.sync import SyncCommitResponse, SyncRequest
from ..schemas.version import (
    ChangeResponse,
    CommitRequest,
    DiffResponse,
    FieldDiffResponse,
    IntegrityResponse,
    RollbackRequest,
    StateResponse,
    TagRequest,
    VersionResponse,
    VersionSummaryResponse,
)
from ..services import StatsService, VersionControlEngine
from ..services.sync_service import apply_sync_result

router = APIRouter(prefix="/api/context", tags=["context"])


def get_engine(db: Session = Depends(get_db)) -> VersionControlEngine:
    return VersionControlEngine.for_session(db)


@router.post("/commit", response_model=StateResponse, status_code=201)
def commit(request: CommitRequest, engine: VersionControlEngine = Depends(get_engine)):
    """Commit field updates as the owner's new current version."""
    version = engine.commit(
        request.owner_id,
        request.message,
        request.updates,
        tags=request.tags,
        author=request.author,
    )
    return StateResponse.from_state(engine.get_version_state(version.id))


@router.get("/current", response_model=StateResponse)
def get_current(owner_id: str, engine: VersionControlEngine = Depends(get_engine)):
    """Current version and its full field set."""
    return StateResponse.from_state(engine.get_current_state(owner_id))


@router.get("/history", response_model=List[VersionSummaryResponse])
def get_history(
    owner_id: str,
    limit: Optional[int] = Query(None),
    offset: int = Query(0),
    engine: VersionControlEngine = Depends(get_engine),
):
    """Versions newest first, with the fields each commit changed."""
    return [
        VersionSummaryResponse(
            **VersionResponse.model_validate(s.version).model_dump(),
            change_count=s.change_count,
            changed_fields=s.changed_fields,
        )
        for s in engine.get_history(owner_id, limit=limit, offset=offset)
    ]


@router.get("/search", response_model=List[VersionResponse])
def search_versions(
    owner_id: str,
    q: str,
    limit: int = Query(20),
    engine: VersionControlEngine = Depends(get_engine),
):
    """Search commit messages and tags."""
    return engine.search_versions(owner_id, q, limit=limit)


@router.get("/at", response_model=StateResponse)
def get_state_at(owner_id: str, timestamp: str, engine: VersionControlEngine = Depends(get_engine)):
    """State as of an ISO-8601 instant."""
    return StateResponse.from_state(engine.get_state_at(owner_id, timestamp))


@router.get("/versions/{version_id}", response_model=StateResponse)
def get_version(version_id: str, engine: VersionControlEngine = Depends(get_engine)):
    """One version and its full field set."""
    return StateResponse.from_state(engine.get_version_state(version_id))


@router.put("/versions/{version_id}/tags", response_model=VersionResponse)
def set_tags(version_id: str, request: TagRequest, engine: VersionControlEngine = Depends(get_engine)):
    """Replace a version's tags."""
    return engine.tag(version_id, request.tags)


@router.get("/diff", response_model=DiffResponse)
def diff_versions(
    version_from: str = Query(..., alias="from"),
    version_to: str = Query(..., alias="to"),
    include_unchanged: bool = Query(False),
    engine: VersionControlEngine = Depends(get_engine),
):
    """Field-by-field comparison of two versions."""
    result = engine.diff(version_from, version_to, include_unchanged=include_unchanged)
    return DiffResponse(
        version_from=result.version_from,
        version_to=result.version_to,
        changes=[
            FieldDiffResponse(
                field_name=c.field_name,
                old_value=c.old_value,
                new_value=c.new_value,
                change_type=c.change_type.value,
            )
            for c in result.changes
        ],
        computed_at=result.computed_at,
    )


@router.post("/rollback", response_model=StateResponse, status_code=201)
def rollback(request: RollbackRequest, engine: VersionControlEngine = Depends(get_engine)):
    """Create a new version restoring an earlier version's fields."""
    version = engine.rollback(request.owner_id, request.version_id, reason=request.reason)
    return StateResponse.from_state(engine.get_version_state(version.id))


@router.get("/fields/{field_name}/history", response_model=List[ChangeResponse])
def get_field_history(
    field_name: str,
    owner_id: str,
    start: Optional[str] = None,
    end: Optional[str] = None,
    engine: VersionControlEngine = Depends(get_engine),
):
    """Change rows for one field, newest first."""
    return engine.get_field_history(owner_id, field_name, start=start, end=end)


@router.get("/stats", response_model=StatsResponse)
def get_stats(
    owner_id: str,
    days: Optional[int] = Query(None),
    top: Optional[int] = Query(None),
    db: Session = Depends(get_db),
):
    """Version and change totals, most-changed fields, daily activity."""
    return StatsService.for_session(db).get_stats(owner_id, days=days, top=top)


@router.get("/integrity", response_model=IntegrityResponse)
def verify_integrity(owner_id: str, engine: VersionControlEngine = Depends(get_engine)):
    """Check the single-current and full-snapshot invariants."""
    report = engine.verify_integrity(owner_id)
    return IntegrityResponse.model_validate(report)


@router.post("/sync", response_model=SyncCommitResponse)
def apply_sync(request: SyncRequest, engine: VersionControlEngine = Depends(get_engine)):
    """Commit a sync result if it succeeded and carries significant changes."""
    version = apply_sync_result(
        engine,
        request.owner_id,
        request.result,
        message=request.message,
        author=request.author,
        thresholds=request.thresholds,
    )
    if version is None:
        return SyncCommitResponse(committed=False)
    return SyncCommitResponse(committed=True, version=VersionResponse.model_validate(version))
