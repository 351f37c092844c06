"""
statbridge GUI - status and execution API for the R engine.

This package provides a FastAPI application exposing engine status,
initialization and reset controls, the analysis catalogue, and a WebSocket
that pushes bootstrap progress to loading indicators.

Usage
-----
    uvicorn gui.app:app --port 8000
    # or
    python -m gui.app
"""
from .app import create_app

__all__ = ['create_app']
