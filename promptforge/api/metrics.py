"""Prometheus scrape endpoint."""
from fastapi import APIRouter
from fastapi.responses import PlainTextResponse

from promptforge.core.metrics import METRICS

router = APIRouter(tags=["metrics"])

PROMETHEUS_CONTENT_TYPE = "text/plain; version=0.0.4; charset=utf-8"


@router.get("/metrics", response_class=PlainTextResponse)
def metrics():
    return PlainTextResponse(METRICS.render(), media_type=PROMETHEUS_CONTENT_TYPE)
