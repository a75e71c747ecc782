"""Admin endpoints for the key pool, the rate limiter and the request queues."""

from typing import Dict, Optional

from fastapi import APIRouter, HTTPException, Request

admin_router = APIRouter(prefix="/api/api-keys", tags=["admin"])


def _resolve_key(request: Request, key_id: str) -> str:
    credential = request.app.state.key_pool.find_by_id(key_id)
    if credential is None:
        raise HTTPException(status_code=404, detail=f"Key {key_id} not found")
    return credential.key


async def _read_optional_body(request: Request) -> Dict[str, object]:
    raw = await request.body()
    if not raw:
        return {}
    try:
        body = await request.json()
    except ValueError:
        raise HTTPException(status_code=400, detail="Request body must be JSON")
    if not isinstance(body, dict):
        raise HTTPException(status_code=400, detail="Request body must be a JSON object")
    return body


@admin_router.get("/status")
async def get_all_status(request: Request) -> Dict[str, object]:
    """Get status of all API keys in the pool."""
    return request.app.state.key_pool.get_status()


@admin_router.get("/status/{key_id}")
async def get_key_status(request: Request, key_id: str) -> Dict[str, object]:
    """Get status of a specific API key."""
    status = request.app.state.key_pool.get_key_status(key_id)
    if status is None:
        raise HTTPException(status_code=404, detail=f"Key {key_id} not found")
    return status


@admin_router.post("/reset-quota")
async def reset_quota(request: Request) -> Dict[str, object]:
    """Clear quota limits. Disabled (leaked) keys stay disabled."""
    count = request.app.state.key_pool.clear_all_quota_limits()
    return {"success": True, "message": f"Cleared quota limits on {count} key(s)", "count": count}


@admin_router.post("/reset-failures")
async def reset_failures(request: Request) -> Dict[str, object]:
    count = request.app.state.key_pool.clear_temporary_failures()
    return {"success": True, "message": f"Cleared failures on {count} key(s)", "count": count}


@admin_router.post("/reset-all")
async def reset_all(request: Request) -> Dict[str, object]:
    count = request.app.state.key_pool.clear_all()
    return {"success": True, "message": f"Reset {count} key(s)", "count": count}


@admin_router.get("/rate-limit-stats")
async def rate_limit_stats(request: Request) -> Dict[str, object]:
    limiter = request.app.state.rate_limiter
    return {"success": True, "config": limiter.get_config(), "stats": limiter.get_all_stats()}


@admin_router.post("/reset-rate-limit")
async def reset_rate_limit(request: Request) -> Dict[str, object]:
    count = request.app.state.rate_limiter.clear_all()
    return {"success": True, "message": f"Cleared rate limit records for {count} key(s)", "count": count}


@admin_router.get("/queue-status")
async def queue_status(request: Request, key_id: Optional[str] = None) -> Dict[str, object]:
    serializer = request.app.state.call_serializer
    api_key = _resolve_key(request, key_id) if key_id else None
    return {
        "success": True,
        "total_queue_length": serializer.total_queue_depth(),
        "queues": serializer.get_queue_status(api_key),
    }


@admin_router.post("/clear-queue")
async def clear_queue(request: Request) -> Dict[str, object]:
    """Reject every waiting request, for one key or for all keys."""
    serializer = request.app.state.call_serializer
    body = await _read_optional_body(request)
    key_id = body.get("key_id")
    if key_id:
        api_key = _resolve_key(request, str(key_id))
        count = serializer.clear(api_key)
        message = f"Cleared the queue of {key_id} ({count} request(s))"
    else:
        count = serializer.clear_all()
        message = f"Cleared all queues ({count} request(s))"
    return {"success": True, "message": message, "cleared_count": count}
