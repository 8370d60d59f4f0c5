"""FastAPI routers for the generation API."""

from printcraft.routes.generations import router as generations_router
from printcraft.routes.webhooks import router as webhooks_router
from printcraft.routes.admin import router as admin_router

__all__ = ["generations_router", "webhooks_router", "admin_router"]
