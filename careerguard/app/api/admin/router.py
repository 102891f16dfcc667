from fastapi import APIRouter, Depends

from careerguard.app.middleware.auth import require_admin

router = APIRouter(prefix="/admin", tags=["admin"], dependencies=[Depends(require_admin)])

from . import rate_limits  # noqa: E402

router.include_router(rate_limits.router, prefix="/rate-limits", tags=["admin-rate-limits"])
