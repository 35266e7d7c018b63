"""Routers package."""

from . import (
    health,
    auth,
    billing,
    images,
    webhooks,
)
