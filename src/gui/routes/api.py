"""
API routes - JSON endpoints for engine status and analysis execution.
"""
from fastapi import APIRouter, HTTPException

from engine import EngineStatus

from ..models import AnalysisInfo, AnalysisRequest, AnalysisResponse, CacheStats
from ..services.engine_service import get_engine_service

router = APIRouter(prefix="/api")


# =============================================================================
# ENGINE LIFECYCLE
# =============================================================================

@router.get("/engine/status", response_model=EngineStatus)
async def engine_status():
    """Current engine status (safe to poll)."""
    return get_engine_service().status()


@router.post("/engine/init", response_model=EngineStatus, status_code=202)
async def engine_init():
    """
    Start bootstrapping the engine in the background.

    Progress is available from ``/api/engine/status`` or ``/ws/engine``.
    """
    return get_engine_service().start()


@router.post("/engine/reset", response_model=EngineStatus)
async def engine_reset():
    """Tear down the engine and clear the Failed state."""
    return await get_engine_service().reset()


# =============================================================================
# ANALYSES
# =============================================================================

@router.get("/analyses", response_model=list[AnalysisInfo])
async def analyses():
    """Registered analyses."""
    return [
        AnalysisInfo(name=name, description=description)
        for name, description in get_engine_service().analyses().items()
    ]


@router.post("/analyses/{name}", response_model=AnalysisResponse)
async def run_analysis(name: str, request: AnalysisRequest):
    """
    Run a registered analysis.

    Engine and validation failures are mapped to JSON error bodies by the
    application's exception handlers.
    """
    service = get_engine_service()
    if name not in service.analyses():
        raise HTTPException(status_code=404, detail=f"Analysis '{name}' not found")
    try:
        service.check_params(name, request.params)
    except TypeError as e:
        raise HTTPException(status_code=422, detail=f"Invalid parameters for '{name}': {e}")
    result = await service.run(
        name, request.params, use_cache=request.use_cache, timeout_ms=request.timeout_ms
    )
    return AnalysisResponse(analysis=name, result=result)


# =============================================================================
# CACHE
# =============================================================================

@router.get("/cache", response_model=CacheStats)
async def cache_stats():
    """Result cache statistics."""
    return CacheStats(**get_engine_service().cache.stats())


@router.post("/cache/clear")
async def clear_cache(analysis: str | None = None):
    """Clear cached results for one analysis or all."""
    count = get_engine_service().cache.invalidate(analysis)
    return {"cleared": count}
