"""FastAPI route definitions for the URL shortener REST API.

This module maps HTTP requests onto ``URLShorteningService`` and translates
the service's typed errors into status codes.

API Endpoint Overview
=====================
::
    GET    /health
        └─ HealthResponse (200)

    POST   /api/v1/shorten
        ├─ URLCreate (request body)
        └─ URLCreateResponse (201) or 400/409/422/503

    GET    /api/v1/stats/:short_code
        └─ URLStats (200) or 404

    PATCH  /api/v1/urls/:short_code
        ├─ URLUpdate (request body)
        └─ URLCreateResponse (200) or 400/404/422

    DELETE /api/v1/urls/:short_code
        └─ 204 or 404

    GET    /:short_code
        └─ 307 Redirect, 404 (unknown) or 410 (expired)

Key Behaviours
===============
- InvalidURLError → 400, CodeAlreadyExistsError → 409,
  URLNotFoundError → 404, ExpiredURLError → 410,
  CodeGenerationExhaustedError → 503.
- Any other exception propagates and FastAPI answers 500.
- 307 redirects keep every hit flowing through the service, so clicks
  are not lost to browser redirect caching.
"""

from fastapi import APIRouter, Depends, HTTPException, Response
from fastapi.responses import RedirectResponse

from shortener.dependencies import (
    RequestContext,
    ServiceManager,
    get_request_context,
    get_service_manager,
    get_url_service,
)
from shortener.enums import HealthStatus
from shortener.exceptions import (
    CodeAlreadyExistsError,
    CodeGenerationExhaustedError,
    ExpiredURLError,
    InvalidURLError,
    URLNotFoundError,
)
from shortener.schemas import HealthResponse, URLCreate, URLCreateResponse, URLStats, URLUpdate
from shortener.url_service import URLShorteningService

__all__ = ["router"]

router = APIRouter()


@router.get("/health", response_model=HealthResponse, tags=["health"])
async def health_check(manager: ServiceManager = Depends(get_service_manager)) -> HealthResponse:
    db_status = HealthStatus.HEALTHY
    cache_status = HealthStatus.HEALTHY

    try:
        await manager.url_repository.ping()
    except Exception as e:
        manager.logger.error(f"Database health check failed: {e}")
        db_status = HealthStatus.UNHEALTHY

    try:
        await manager.url_cache.ping()
    except Exception as e:
        manager.logger.error(f"Cache health check failed: {e}")
        cache_status = HealthStatus.UNHEALTHY

    status = (
        HealthStatus.HEALTHY
        if db_status is HealthStatus.HEALTHY and cache_status is HealthStatus.HEALTHY
        else HealthStatus.UNHEALTHY
    )
    return HealthResponse(status=status, database=db_status, cache=cache_status)


@router.post("/api/v1/shorten", response_model=URLCreateResponse, status_code=201, tags=["urls"])
async def shorten_url(
    payload: URLCreate,
    ctx: RequestContext = Depends(get_request_context),
    service: URLShorteningService = Depends(get_url_service),
) -> URLCreateResponse:
    ctx.add_tag("url_creation")

    try:
        created = await service.create_short_url(payload)
    except InvalidURLError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except CodeAlreadyExistsError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    except CodeGenerationExhaustedError as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc

    ctx.logger.info(
        f"URL shortened successfully: {created.short_code}",
        extra={
            "operation": "create_short_url",
            "short_code": created.short_code,
            "duration_ms": ctx.get_duration(),
        },
    )
    return created


@router.get("/api/v1/stats/{short_code}", response_model=URLStats, tags=["urls"])
async def get_stats(
    short_code: str,
    service: URLShorteningService = Depends(get_url_service),
) -> URLStats:
    try:
        return await service.get_url_stats(short_code)
    except URLNotFoundError as exc:
        raise HTTPException(status_code=404, detail="Short URL not found") from exc


@router.patch("/api/v1/urls/{short_code}", response_model=URLCreateResponse, tags=["urls"])
async def update_url(
    short_code: str,
    payload: URLUpdate,
    service: URLShorteningService = Depends(get_url_service),
) -> URLCreateResponse:
    try:
        return await service.update_url(short_code, payload)
    except InvalidURLError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except URLNotFoundError as exc:
        raise HTTPException(status_code=404, detail="Short URL not found") from exc


@router.delete("/api/v1/urls/{short_code}", status_code=204, tags=["urls"])
async def delete_url(
    short_code: str,
    service: URLShorteningService = Depends(get_url_service),
) -> Response:
    try:
        await service.delete_url(short_code)
    except URLNotFoundError as exc:
        raise HTTPException(status_code=404, detail="Short URL not found") from exc
    return Response(status_code=204)


@router.get("/{short_code}", tags=["redirect"])
async def redirect_to_url(
    short_code: str,
    ctx: RequestContext = Depends(get_request_context),
    service: URLShorteningService = Depends(get_url_service),
) -> RedirectResponse:
    ctx.add_tag("redirect")

    try:
        original_url = await service.resolve(short_code, ctx.click_context())
    except URLNotFoundError as exc:
        raise HTTPException(status_code=404, detail="Short URL not found") from exc
    except ExpiredURLError as exc:
        raise HTTPException(status_code=410, detail="Short URL has expired") from exc

    ctx.logger.info(
        f"Redirect successful: {short_code} -> {original_url}",
        extra={
            "operation": "redirect",
            "short_code": short_code,
            "client_ip": ctx.client_ip,
            "duration_ms": ctx.get_duration(),
        },
    )
    return RedirectResponse(url=original_url, status_code=307)
