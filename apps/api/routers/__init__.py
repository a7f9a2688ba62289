"""Routers package."""

from . import (
    health,
    billing,
    promocodes,
    webhooks,
)
