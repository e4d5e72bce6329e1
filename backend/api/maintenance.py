import hmac
import os
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request, status
from pydantic import BaseModel, Field

from db import get_sqlite_client
from runtime_state import runtime_state

_MAINTENANCE_API_KEY_ENV = "MAINTENANCE_API_KEY"
_MAINTENANCE_API_KEY_HEADER = "X-Maintenance-API-Key"
_MAINTENANCE_API_KEY_ALLOW_INSECURE_LOCAL_ENV = "MAINTENANCE_API_KEY_ALLOW_INSECURE_LOCAL"
_TRUTHY_ENV_VALUES = {"1", "true", "yes", "on"}
_LOOPBACK_CLIENT_HOSTS = {"127.0.0.1", "::1", "localhost"}


def _get_configured_api_key() -> str:
    return str(os.getenv(_MAINTENANCE_API_KEY_ENV) or "").strip()


def _allow_insecure_local_without_api_key() -> bool:
    value = str(os.getenv(_MAINTENANCE_API_KEY_ALLOW_INSECURE_LOCAL_ENV) or "").strip().lower()
    return value in _TRUTHY_ENV_VALUES


def _is_loopback_request(request: Request) -> bool:
    client = getattr(request, "client", None)
    host = str(getattr(client, "host", "") or "").strip().lower()
    return host in _LOOPBACK_CLIENT_HOSTS


def _extract_bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization or not isinstance(authorization, str):
        return None
    value = authorization.strip()
    if not value:
        return None
    scheme, _, token = value.partition(" ")
    if scheme.lower() != "bearer":
        return None
    token = token.strip()
    return token if token else None


async def require_maintenance_api_key(
    request: Request,
    x_maintenance_api_key: Optional[str] = Header(default=None, alias=_MAINTENANCE_API_KEY_HEADER),
    authorization: Optional[str] = Header(default=None, alias="Authorization"),
) -> None:
    configured = _get_configured_api_key()
    if not configured:
        if _allow_insecure_local_without_api_key() and _is_loopback_request(request):
            return
        reason = (
            "insecure_local_override_requires_loopback"
            if _allow_insecure_local_without_api_key()
            else "api_key_not_configured"
        )
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={
                "error": "maintenance_auth_failed",
                "reason": reason,
            },
            headers={"WWW-Authenticate": "Bearer"},
        )

    provided = str(x_maintenance_api_key or "").strip() or _extract_bearer_token(authorization)
    if not provided or not hmac.compare_digest(provided, configured):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={
                "error": "maintenance_auth_failed",
                "reason": "invalid_or_missing_api_key",
            },
            headers={"WWW-Authenticate": "Bearer"},
        )


router = APIRouter(
    prefix="/maintenance",
    tags=["maintenance"],
    dependencies=[Depends(require_maintenance_api_key)],
)


class JobRetryRequest(BaseModel):
    reason: str = Field(default="api_retry", max_length=120)


async def _services():
    return await runtime_state.ensure_started(get_sqlite_client, start_worker=False)


@router.get("/jobs/stats")
async def get_job_stats():
    services = await _services()
    return {
        "queue": await services.queue.stats(),
        "runtime": await runtime_state.status(),
    }


@router.get("/jobs/failed")
async def list_failed_jobs(
    limit: int = Query(default=100, ge=1, le=500),
    terminal_only: bool = False,
):
    services = await _services()
    jobs = await services.queue.get_failed_jobs(limit=limit, terminal_only=terminal_only)
    return {"count": len(jobs), "jobs": [job.to_dict() for job in jobs]}


@router.get("/jobs/user/{user_id}")
async def list_user_jobs(user_id: str, limit: int = Query(default=50, ge=1, le=500)):
    services = await _services()
    jobs = await services.queue.get_user_jobs(user_id, limit=limit)
    return {"user_id": user_id, "count": len(jobs), "jobs": [job.to_dict() for job in jobs]}


@router.get("/jobs/{job_id}")
async def get_job(job_id: str):
    services = await _services()
    job = await services.queue.get_job(job_id)
    if job is None:
        raise HTTPException(status_code=404, detail={"error": "job_not_found", "job_id": job_id})
    return {"job": job.to_dict()}


@router.post("/jobs/{job_id}/retry")
async def retry_job(job_id: str, payload: Optional[JobRetryRequest] = None):
    """
    Retry a failed job.

    A job with attempts left is moved back to pending. A terminal job stays
    failed for the record and a fresh job with the same type and payload is
    enqueued instead.
    """
    services = await _services()
    job = await services.queue.get_job(job_id)
    if job is None:
        raise HTTPException(status_code=404, detail={"error": "job_not_found", "job_id": job_id})
    if job.status != "failed":
        raise HTTPException(
            status_code=409,
            detail={
                "error": "job_retry_not_allowed",
                "reason": f"status:{job.status}",
                "job_id": job_id,
                "job_type": job.job_type.value,
            },
        )

    reason = payload.reason if isinstance(payload, JobRetryRequest) else "api_retry"
    if not job.is_terminal and await services.queue.requeue(job_id):
        return {"ok": True, "mode": "requeued", "job_id": job_id, "reason": reason}

    new_job_id = await services.queue.enqueue(
        job.job_type,
        job.user_id,
        {**job.payload, "retry_of": job_id},
        priority=job.priority,
    )
    return {
        "ok": True,
        "mode": "enqueued_copy",
        "job_id": new_job_id,
        "retry_of": job_id,
        "reason": reason,
    }


@router.post("/jobs/retry-failed")
async def retry_all_failed_jobs():
    services = await _services()
    retried = await services.queue.retry_all_failed()
    return {"ok": True, "requeued": retried}


@router.post("/jobs/{job_id}/cancel")
async def cancel_job(job_id: str):
    services = await _services()
    job = await services.queue.get_job(job_id)
    if job is None:
        raise HTTPException(status_code=404, detail={"error": "job_not_found", "job_id": job_id})
    if not await services.queue.cancel(job_id):
        raise HTTPException(
            status_code=409,
            detail={
                "error": "job_cancel_not_allowed",
                "reason": f"status:{job.status}",
                "job_id": job_id,
            },
        )
    return {"ok": True, "job_id": job_id, "cancelled": True}


@router.post("/nudges/sweep")
async def sweep_expired_nudges():
    services = await _services()
    removed = await services.agent.sweep_expired_nudges()
    return {"ok": True, "removed": removed}


@router.post("/insights/snapshot")
async def snapshot_insights():
    services = await _services()
    result: Dict[str, Any] = await services.agent.cache_insights_for_all_users()
    return {"ok": True, **result}


@router.get("/worker")
async def get_worker_status():
    return await runtime_state.status()
