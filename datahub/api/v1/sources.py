"""
Data source endpoints.

Exposes the orchestrator's query surface: fetching through the cache,
synchronization status and triggers, health, alerts and cache control.
"""

import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request

from datahub.core.errors import DataValidationError, SourceFetchError, UnknownSourceError
from datahub.orchestrator import DataServiceOrchestrator

logger = logging.getLogger(__name__)

router = APIRouter(tags=["sources"])

RESERVED_QUERY_PARAMS = {"force_refresh"}


def get_orchestrator(request: Request) -> DataServiceOrchestrator:
    """Return the orchestrator created in the application lifespan."""
    orchestrator = getattr(request.app.state, "orchestrator", None)
    if orchestrator is None:
        raise HTTPException(status_code=503, detail="Data service is not initialized")
    return orchestrator


def _http_error(e: Exception) -> HTTPException:
    if isinstance(e, UnknownSourceError):
        return HTTPException(status_code=404, detail=e.to_dict())
    if isinstance(e, DataValidationError):
        return HTTPException(status_code=422, detail=e.to_dict())
    if isinstance(e, SourceFetchError):
        return HTTPException(status_code=502, detail=e.to_dict())
    return HTTPException(status_code=500, detail=str(e))


# =============================================================================
# Sources
# =============================================================================


@router.get("/sources")
def list_sources(
    orchestrator: DataServiceOrchestrator = Depends(get_orchestrator),
) -> Dict[str, Any]:
    """List registered data sources and the configuration status."""
    return {
        "sources": orchestrator.get_data_sources(),
        "configuration": orchestrator.get_configuration_status(),
    }


@router.get("/sources/{source_id}/fetch/{endpoint:path}")
async def fetch_source_data(
    source_id: str,
    endpoint: str,
    request: Request,
    force_refresh: bool = Query(False, description="Bypass the cache"),
    orchestrator: DataServiceOrchestrator = Depends(get_orchestrator),
):
    """
    Fetch an endpoint of a source through the shared cache.

    Query parameters other than ``force_refresh`` are forwarded to the
    source and are part of the cache key.
    """
    params = {
        k: v for k, v in request.query_params.items()
        if k not in RESERVED_QUERY_PARAMS
    }
    try:
        data = await orchestrator.fetch(source_id, endpoint, params, force_refresh=force_refresh)
    except (UnknownSourceError, SourceFetchError) as e:
        raise _http_error(e)

    return {"source": source_id, "endpoint": endpoint, "params": params, "data": data}


@router.delete("/sources/{source_id}")
async def unregister_source(
    source_id: str,
    orchestrator: DataServiceOrchestrator = Depends(get_orchestrator),
) -> Dict[str, Any]:
    """Stop syncing and monitoring a source and close its adapter."""
    try:
        await orchestrator.unregister_source(source_id)
    except UnknownSourceError as e:
        raise _http_error(e)
    return {"source": source_id, "unregistered": True}


@router.get("/sources/{source_id}/metrics")
def get_source_metrics(
    source_id: str,
    orchestrator: DataServiceOrchestrator = Depends(get_orchestrator),
) -> Dict[str, Any]:
    try:
        return orchestrator.get_performance_metrics(source_id)
    except UnknownSourceError as e:
        raise _http_error(e)


# =============================================================================
# Synchronization
# =============================================================================


@router.get("/sync/status")
def get_sync_status(
    orchestrator: DataServiceOrchestrator = Depends(get_orchestrator),
) -> Dict[str, Any]:
    return {
        "sources": orchestrator.get_sync_status(),
        "statistics": orchestrator.get_sync_statistics(),
    }


@router.post("/sync")
async def sync_all_sources(
    orchestrator: DataServiceOrchestrator = Depends(get_orchestrator),
) -> Dict[str, Any]:
    """Synchronize every source now, in priority order."""
    results = await orchestrator.force_sync_all()
    return {
        "results": {sid: result.to_dict() for sid, result in results.items()},
        "succeeded": sum(1 for r in results.values() if r.success),
        "failed": sum(1 for r in results.values() if not r.success),
    }


@router.post("/sync/{source_id}")
async def sync_source(
    source_id: str,
    orchestrator: DataServiceOrchestrator = Depends(get_orchestrator),
) -> Dict[str, Any]:
    try:
        result = await orchestrator.force_sync(source_id)
    except UnknownSourceError as e:
        raise _http_error(e)
    return result.to_dict()


# =============================================================================
# Health
# =============================================================================


@router.get("/health")
def get_system_health(
    orchestrator: DataServiceOrchestrator = Depends(get_orchestrator),
) -> Dict[str, Any]:
    return orchestrator.get_system_health_status()


@router.get("/health/sources")
def get_sources_health(
    orchestrator: DataServiceOrchestrator = Depends(get_orchestrator),
) -> Dict[str, Any]:
    return orchestrator.get_all_sources_health_status()


@router.get("/health/alerts")
def get_alerts(
    source_id: Optional[str] = Query(None, description="Restrict to one source"),
    orchestrator: DataServiceOrchestrator = Depends(get_orchestrator),
) -> List[Dict[str, Any]]:
    try:
        return orchestrator.get_alerts(source_id)
    except UnknownSourceError as e:
        raise _http_error(e)


@router.delete("/health/{source_id}")
def reset_source_monitoring(
    source_id: str,
    orchestrator: DataServiceOrchestrator = Depends(get_orchestrator),
) -> Dict[str, Any]:
    """Clear health history and error log of a source (its sync schedule is kept)."""
    try:
        orchestrator.reset_monitoring_data(source_id)
    except UnknownSourceError as e:
        raise _http_error(e)
    return {"source": source_id, "reset": True}


# =============================================================================
# Cache
# =============================================================================


@router.get("/cache")
async def get_cache_info(
    orchestrator: DataServiceOrchestrator = Depends(get_orchestrator),
) -> Dict[str, Any]:
    return await orchestrator.get_cache_info()


@router.delete("/cache")
async def clear_cache(
    orchestrator: DataServiceOrchestrator = Depends(get_orchestrator),
) -> Dict[str, Any]:
    cleared = await orchestrator.clear_cache()
    return {"cleared": cleared}
