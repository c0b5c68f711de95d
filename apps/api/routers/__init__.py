"""Routers package."""

from . import (
    health,
    auth,
    credits,
    generate,
    admin,
)
