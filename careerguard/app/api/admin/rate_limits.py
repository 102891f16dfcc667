"""Operator endpoints for inspecting and clearing rate limit state."""

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from pydantic import BaseModel, model_validator

from careerguard.app.exceptions import UnknownStrategyError
from careerguard.app.middleware.rate_limit.service import RateLimitService
from careerguard.app.middleware.rate_limit.strategies import RequestIdentity

router = APIRouter()


def get_rate_limiter(request: Request) -> RateLimitService:
    return request.app.state.rate_limiter


class KeySelector(BaseModel):
    """Either a raw counter key, or a strategy plus the identity it keys on."""

    key: Optional[str] = None
    strategy: Optional[str] = None
    client_ip: str = "unknown"
    user_id: Optional[str] = None
    path: str = "/"
    username: Optional[str] = None

    @model_validator(mode="after")
    def check_target(self) -> "KeySelector":
        if not self.key and not self.strategy:
            raise ValueError("Provide either 'key' or 'strategy'")
        return self

    def resolve(self, service: RateLimitService) -> str:
        if self.key:
            return self.key
        try:
            definition = service.registry.get(self.strategy)
        except UnknownStrategyError as e:
            raise HTTPException(status_code=404, detail=e.message)
        identity = RequestIdentity(
            client_ip=self.client_ip,
            user_id=self.user_id,
            path=self.path,
            body={"username": self.username} if self.username else None,
        )
        return definition.key_for(identity)


@router.post("/reset")
async def reset_key(
    selector: KeySelector,
    service: RateLimitService = Depends(get_rate_limiter),
) -> dict:
    """Clear the window, bucket and block record for one key."""
    key = selector.resolve(service)
    removed = await service.reset(key)
    return {"key": key, "removed": removed}


@router.get("/status")
async def key_status(
    key: Optional[str] = None,
    strategy: Optional[str] = None,
    client_ip: str = "unknown",
    user_id: Optional[str] = None,
    path: str = "/",
    username: Optional[str] = None,
    points: Optional[int] = Query(None, ge=1),
    duration: Optional[int] = Query(None, ge=1),
    service: RateLimitService = Depends(get_rate_limiter),
) -> dict:
    """Current window usage for a key without consuming from it.

    Limits come from ``strategy`` unless ``points`` and ``duration`` are given.
    """
    if not key and not strategy:
        raise HTTPException(status_code=422, detail="Provide either 'key' or 'strategy'")
    if strategy:
        try:
            definition = service.registry.get(strategy)
        except UnknownStrategyError as e:
            raise HTTPException(status_code=404, detail=e.message)
        points = points or definition.limit_points
        duration = duration or definition.window_seconds
    if points is None or duration is None:
        raise HTTPException(status_code=422, detail="'points' and 'duration' are required without 'strategy'")

    selector = KeySelector(
        key=key, strategy=strategy, client_ip=client_ip, user_id=user_id, path=path, username=username
    )
    resolved = selector.resolve(service)

    status = await service.get_status(resolved, points, duration)
    return status.to_dict()


@router.post("/cleanup")
async def cleanup(service: RateLimitService = Depends(get_rate_limiter)) -> dict:
    """Run one store housekeeping pass now."""
    return {"cleaned_keys": await service.cleanup()}
