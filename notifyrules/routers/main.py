from fastapi import APIRouter

from notifyrules.routers.health import health_router
from notifyrules.routers.rules import rules_router

main_router = APIRouter()

main_router.include_router(health_router, prefix="/health", tags=["Health"])
main_router.include_router(rules_router, prefix="/rules", tags=["Rules"])
