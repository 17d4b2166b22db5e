"""System and transparency endpoints for the Pollgate API."""

from __future__ import annotations

import time

from fastapi import APIRouter

from pollgate.api.v1.dependencies import RateLimiterDep, SettingsDep

router = APIRouter(prefix="/system", tags=["system", "transparency"])


@router.get("/rate-limits")
async def get_rate_limits(
    rate_limiter: RateLimiterDep, config: SettingsDep
) -> dict[str, object]:
    """Return the configured quota for every route class.

    Args:
        rate_limiter: Rate limiter providing the active quotas
        config: Application settings

    Returns:
        Dictionary keyed by route class with limit, window and message
    """
    return {
        "enabled": config.rate_limit_enabled,
        "algorithm": "fixed-window",
        "classes": {
            route_class: {
                "limit": quota.limit,
                "window_ms": quota.window_ms,
                "message": quota.message,
            }
            for route_class, quota in rate_limiter.limits.items()
        },
    }


@router.get("/status")
async def get_system_status(config: SettingsDep) -> dict[str, object]:
    """Get overall system status for monitoring dashboards."""
    return {
        "service": "pollgate",
        "version": config.app_version,
        "status": "operational",
        "timestamp": int(time.time()),
        "environment": "production" if not config.debug else "development",
    }
