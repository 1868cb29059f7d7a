"""Routers package."""

from . import (
    health,
    status_ws,
    videos,
)
