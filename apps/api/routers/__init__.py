"""Routers package."""

from . import (
    health,
    quota,
    billing,
    chat,
)
