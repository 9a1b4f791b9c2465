from fastapi import APIRouter, Depends, HTTPException, status as http_status

from pagebridge.core.security import require_api_key
from pagebridge.schemas.sync import TaskStatusPatchRequest, TaskStatusPatchResponse
from pagebridge.services.sanity_client import SanityError, SanityUnavailableError, get_sanity_client
from pagebridge.services.task_generator import TaskGenerator

router = APIRouter()


@router.patch("/{task_id}", response_model=TaskStatusPatchResponse, dependencies=[Depends(require_api_key)])
async def update_task_status(
    task_id: str,
    payload: TaskStatusPatchRequest,
    sanity=Depends(get_sanity_client),
) -> TaskStatusPatchResponse:
    try:
        patch = await TaskGenerator(sanity).update_task_status(
            task_id,
            payload.status,
            snooze_days=payload.snooze_days,
            notes=payload.notes,
        )
    except SanityUnavailableError as exc:
        raise HTTPException(status_code=http_status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except SanityError as exc:
        if exc.status_code == http_status.HTTP_404_NOT_FOUND:
            raise HTTPException(status_code=http_status.HTTP_404_NOT_FOUND, detail="task not found") from exc
        raise HTTPException(status_code=http_status.HTTP_502_BAD_GATEWAY, detail=str(exc)) from exc

    return TaskStatusPatchResponse(
        task_id=task_id,
        status=patch["status"],
        snoozed_until=patch.get("snoozedUntil"),
        resolved_at=patch.get("resolvedAt"),
        notes=patch.get("notes"),
    )
