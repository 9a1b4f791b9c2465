from collections import Counter

from fastapi import APIRouter, Depends, HTTPException, Query, status as http_status

from pagebridge.schemas.matching import DiagnosticsResponse, UnmatchDiagnosticOut, UnmatchedReason
from pagebridge.services.repository import (
    RepositoryUnavailableError,
    RepositoryValidationError,
    get_repository,
)

router = APIRouter()


@router.get("", response_model=DiagnosticsResponse)
async def list_diagnostics(
    site_url: str = Query(min_length=1),
    reason: UnmatchedReason | None = Query(default=None),
    limit: int = Query(default=20, ge=1, le=200),
    repository=Depends(get_repository),
) -> DiagnosticsResponse:
    try:
        rows = await repository.list_unmatch_diagnostics(site_url, reason=reason, limit=limit)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=http_status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except RepositoryValidationError as exc:
        raise HTTPException(status_code=http_status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc

    items = [UnmatchDiagnosticOut(**row) for row in rows]
    return DiagnosticsResponse(
        site_url=site_url,
        total=len(items),
        by_reason=dict(Counter(item.unmatch_reason for item in items)),
        items=items,
    )
