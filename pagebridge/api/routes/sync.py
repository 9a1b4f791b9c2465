from dataclasses import asdict
import logging

from fastapi import APIRouter, Depends, HTTPException, status as http_status

from pagebridge.core.config import Settings, get_settings
from pagebridge.core.security import require_api_key
from pagebridge.jobs.site_sync import SiteSyncDeps, SiteSyncOptions, run_site_sync
from pagebridge.schemas.sync import IndexStatusOut, SyncRequest, SyncResponse
from pagebridge.services.decay import QuietPeriodConfig
from pagebridge.services.gsc_client import GSCClientError, get_gsc_client
from pagebridge.services.repository import (
    RepositoryUnavailableError,
    RepositoryValidationError,
    get_repository,
)
from pagebridge.services.sanity_client import SanityError, SanityUnavailableError, get_sanity_client
from pagebridge.services.url_configs import SiteConfigError

router = APIRouter()
logger = logging.getLogger(__name__)


@router.post("", response_model=SyncResponse, dependencies=[Depends(require_api_key)])
async def trigger_sync(
    payload: SyncRequest,
    settings: Settings = Depends(get_settings),
    repository=Depends(get_repository),
    sanity=Depends(get_sanity_client),
    gsc=Depends(get_gsc_client),
) -> SyncResponse:
    options = SiteSyncOptions.from_settings(
        settings,
        start_date=payload.start_date,
        end_date=payload.end_date,
        dry_run=payload.dry_run,
        skip_tasks=payload.skip_tasks,
        check_index=payload.check_index,
    )
    if payload.quiet_period_days is not None:
        options.quiet_period = QuietPeriodConfig(
            enabled=payload.quiet_period_days > 0,
            days=payload.quiet_period_days,
        )

    deps = SiteSyncDeps(settings=settings, repository=repository, sanity=sanity, gsc=gsc)
    try:
        summary = await run_site_sync(payload.site_url, options, deps)
    except (RepositoryUnavailableError, SanityUnavailableError) as exc:
        raise HTTPException(status_code=http_status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except (RepositoryValidationError, SiteConfigError) as exc:
        raise HTTPException(status_code=http_status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc
    except (GSCClientError, SanityError) as exc:
        logger.warning("sync failed upstream site=%s error=%s", payload.site_url, exc)
        raise HTTPException(status_code=http_status.HTTP_502_BAD_GATEWAY, detail=str(exc)) from exc

    data = asdict(summary)
    index_status = data.pop("index_status")
    return SyncResponse(
        **data,
        index_status=IndexStatusOut(**index_status) if index_status else None,
    )
