from fastapi import APIRouter

from redemption_app.api.v1.health import router as health_router
from redemption_app.api.v1.redemptions import router as redemptions_router
from redemption_app.api.v1.approvals import router as approvals_router
from redemption_app.api.v1.approval_configs import router as approval_configs_router
from redemption_app.api.v1.settlements import router as settlements_router
from redemption_app.api.v1.windows import router as windows_router
from redemption_app.api.v1.nav import router as nav_router

v1_router = APIRouter()

v1_router.include_router(health_router, tags=["health"])
v1_router.include_router(redemptions_router)
v1_router.include_router(approvals_router)
v1_router.include_router(approval_configs_router)
v1_router.include_router(settlements_router)
v1_router.include_router(windows_router)
v1_router.include_router(nav_router)
