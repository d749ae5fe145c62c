"""API routes."""

from .contracts import router as contracts_router
from .milestones import router as milestones_router
from .notifications import router as notifications_router
from .payments import router as payments_router
from .webhooks import router as webhooks_router

__all__ = [
    "contracts_router",
    "milestones_router",
    "notifications_router",
    "payments_router",
    "webhooks_router",
]
