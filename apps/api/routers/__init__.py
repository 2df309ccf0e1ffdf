"""Routers package."""

from . import (
    health,
    auth,
    credits,
    projects,
    subscriptions,
    payments,
    admin,
)
