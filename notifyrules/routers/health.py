from fastapi import APIRouter, Request

from notifyrules.config.settings import settings
from notifyrules.services.rules import PluginRegistry
from notifyrules.utils.responses import ResponseBuilder

health_router = APIRouter()


@health_router.get("/")
async def health_check(request: Request):
    """
    Basic health check endpoint

    Returns application status and the plugins available to rules
    """
    return ResponseBuilder.success(
        request=request,
        data={
            "status": "healthy",
            "service": settings.NAME,
            "version": settings.VERSION,
            "conditions": PluginRegistry.list_registered_conditions(),
            "actions": PluginRegistry.list_registered_actions(),
        },
        message="Service is running",
    )
