"""
FastAPI dependency giving routes access to the running pipeline.

main.py's lifespan builds the NotificationPipeline and stores it on
app.state; tests override get_pipeline with an in-memory pipeline.
"""

from fastapi import HTTPException, Request

from core.notifications.orchestrator import NotificationPipeline


def get_pipeline(request: Request) -> NotificationPipeline:
    pipeline = getattr(request.app.state, "pipeline", None)
    if pipeline is None:
        raise HTTPException(503, "Notification pipeline not running")
    return pipeline
