"""
Pydantic models for the status API.

Engine status itself is ``engine.lifecycle.EngineStatus``; these models
cover the remaining request and response bodies.
"""
from typing import Any, Optional

from pydantic import BaseModel, Field


class AnalysisInfo(BaseModel):
    """A registered analysis."""
    name: str
    description: str


class AnalysisRequest(BaseModel):
    """Inputs and options for one analysis run."""
    params: dict[str, Any] = Field(default_factory=dict)
    use_cache: bool = True
    timeout_ms: Optional[int] = Field(None, gt=0)


class AnalysisResponse(BaseModel):
    """A finished analysis; ``result`` is the result dataclass as a dict."""
    analysis: str
    result: dict[str, Any]


class CacheStats(BaseModel):
    """In-memory result cache statistics."""
    hits: int
    misses: int
    hit_rate: float
    size: int
    analyses: list[str] = []


class ErrorResponse(BaseModel):
    """Body returned for engine and validation failures."""
    error: str
    message: str
    raw_message: Optional[str] = None
