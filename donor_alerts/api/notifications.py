# donor_alerts/api/notifications.py
from datetime import timedelta

from fastapi import APIRouter, HTTPException, Request, status

from donor_alerts.models.donation_request import utcnow
from donor_alerts.security.jwt_utils import get_current_user

router = APIRouter(prefix="/notifications", tags=["notifications"])


@router.post("/test")
async def send_test_notification(request: Request):
    """
    Queues a test push to the caller's own device.
    401 without a valid JWT, 404 when the caller has no push token.
    """
    runtime = request.app.state.runtime
    current = get_current_user(request.headers.get("Authorization", ""), runtime.settings)

    result = await runtime.manual_trigger.send(current["sub"])
    if not result.success:
        if result.error_code == "not-found":
            code = status.HTTP_404_NOT_FOUND
            kind = "not-found"
        else:
            code = status.HTTP_500_INTERNAL_SERVER_ERROR
            kind = "internal"
        raise HTTPException(status_code=code, detail={"kind": kind, "message": result.error})

    return {"success": True, "message": "Test notification sent", "notificationId": result.data}


# =========================
# Diagnostics
# =========================

@router.get("/debug/consumer-status")
async def debug_consumer_status(request: Request):
    """State of the Service Bus event consumer and the in-process bus backlog."""
    runtime = request.app.state.runtime
    return {**runtime.consumer.status(), "busPending": runtime.bus.pending}


@router.get("/debug/stuck")
async def debug_stuck_notifications(request: Request):
    """
    Unprocessed queue records older than STUCK_AFTER_MINUTES. The retention
    sweeper never deletes these, so they stay here until someone looks.
    """
    runtime = request.app.state.runtime
    get_current_user(request.headers.get("Authorization", ""), runtime.settings)

    cutoff = utcnow() - timedelta(minutes=runtime.settings.stuck_after_minutes)
    stuck = await runtime.queue_store.find_unprocessed_before(cutoff)
    return [
        {
            "id": r.id,
            "title": r.title,
            "priority": r.priority.value,
            "createdAt": r.createdAt.isoformat(),
            "attempt": r.attempt,
        }
        for r in stuck
    ]


@router.post("/debug/sweep/{job}")
async def run_sweep(job: str, request: Request):
    """Runs one of the timer jobs now: expiry, retention or requeue."""
    runtime = request.app.state.runtime
    get_current_user(request.headers.get("Authorization", ""), runtime.settings)

    sweepers = {
        s.name: s
        for s in (runtime.expiry_sweeper, runtime.retention_sweeper, runtime.requeue_sweeper)
    }
    if job not in sweepers:
        raise HTTPException(status_code=404, detail={"kind": "not-found", "message": f"Unknown job {job}"})

    result = await sweepers[job].run()
    if not result.success:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"kind": "internal", "message": result.error},
        )
    return {"job": job, "count": result.data}
