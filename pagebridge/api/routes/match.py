from dataclasses import asdict

from fastapi import APIRouter, Depends, HTTPException, status as http_status

from pagebridge.core.config import Settings, get_settings
from pagebridge.core.security import require_api_key
from pagebridge.jobs.site_sync import fetch_site_document
from pagebridge.schemas.matching import MatchRequest, MatchResponse, MatchResultOut
from pagebridge.services.sanity_client import SanityError, SanityUnavailableError, get_sanity_client
from pagebridge.services.url_configs import (
    SiteConfigError,
    UrlConfig,
    group_url_configs,
    match_with_configs,
    normalize_url_configs,
)

router = APIRouter()


@router.post("", response_model=MatchResponse, dependencies=[Depends(require_api_key)])
async def match_urls(
    payload: MatchRequest,
    settings: Settings = Depends(get_settings),
    sanity=Depends(get_sanity_client),
) -> MatchResponse:
    try:
        if payload.url_configs:
            url_configs = [
                UrlConfig(content_type=item.content_type, slug_field=item.slug_field, path_prefix=item.path_prefix)
                for item in payload.url_configs
            ]
        else:
            site_doc = await fetch_site_document(sanity, payload.site_url) if payload.site_url else None
            url_configs = normalize_url_configs(
                site_doc,
                default_content_types=settings.default_content_types,
                default_slug_field=settings.default_slug_field,
                default_path_prefix=settings.default_path_prefix,
            )
        results = await match_with_configs(
            sanity,
            group_url_configs(url_configs, settings.site_base_url or ""),
            payload.urls,
        )
    except SiteConfigError as exc:
        raise HTTPException(status_code=http_status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc
    except SanityUnavailableError as exc:
        raise HTTPException(status_code=http_status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except SanityError as exc:
        raise HTTPException(status_code=http_status.HTTP_502_BAD_GATEWAY, detail=str(exc)) from exc

    matched = sum(1 for result in results if result.matched)
    return MatchResponse(
        matched=matched,
        unmatched=len(results) - matched,
        results=[MatchResultOut(**asdict(result)) for result in results],
    )
