"""Service layer for the GUI."""
from .engine_service import EngineService, get_engine_service

__all__ = ['EngineService', 'get_engine_service']
