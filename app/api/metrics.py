"""Prometheus-compatible metrics endpoint."""

from fastapi import APIRouter, Depends, Response

from app.api.deps import get_chat_runtime
from app.monitoring.metrics import sessions_active
from app.monitoring.registry import registry
from app.services.runtime import ChatRuntime


router = APIRouter(tags=["metrics"])


@router.get("/metrics", response_class=Response)
def export_metrics(runtime: ChatRuntime = Depends(get_chat_runtime)) -> Response:
    """Expose cache, event bus and membership metrics for scraping.

    Gauges derived from in-process state are sampled at scrape time.
    """

    sessions_active.labels().set(len(runtime.sessions))
    return Response(content=registry.render(), media_type="text/plain; version=0.0.4")
