"""Routers package."""

from . import (
    health,
    auth,
    credits,
    users,
    webhooks,
)
