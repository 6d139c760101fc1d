"""GET /metrics: in-process counters as JSON."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter

from ..core import metrics

router = APIRouter(tags=["Metrics"])


@router.get("/metrics")
async def get_metrics() -> dict[str, Any]:
    return metrics.snapshot()
