"""
GUI-specific configuration.

Extends the main config.py with settings specific to the status API.
"""
from config import PROJECT_ROOT

# Server settings
GUI_HOST = "127.0.0.1"
GUI_PORT = 8000
GUI_DEBUG = False

# WebSocket status push interval
STATUS_POLL_INTERVAL_SECONDS = 0.5

__all__ = [
    'GUI_HOST',
    'GUI_PORT',
    'GUI_DEBUG',
    'STATUS_POLL_INTERVAL_SECONDS',
    'PROJECT_ROOT',
]
