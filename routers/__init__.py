# routers/__init__.py

from fastapi import APIRouter

from .admin_session import router as admin_session_router
from .health import router as health_router


# Master router mounted by main.create_app()
api_router = APIRouter()

api_router.include_router(admin_session_router)
api_router.include_router(health_router)

__all__ = ["api_router"]
