"""
HTTP surface: the externally triggerable "run sweep" operation.

An external scheduler (cron, cloud scheduler) calls ``POST /sweep`` on a
fixed cadence.  The endpoint runs one synchronous sweep and returns its
summary.  Per-entity failures are reported through the counts and the
logs, never as an HTTP error; only a failure of the sweep as a whole
returns 500.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Optional

from fastapi import FastAPI
from fastapi.responses import JSONResponse

from hsseguard import __version__
from hsseguard.scheduler import EscalationScheduler

logger = logging.getLogger(__name__)


def create_app(scheduler: EscalationScheduler) -> FastAPI:
    """Build the FastAPI app serving the sweep for ``scheduler``."""
    app = FastAPI(title="HSSE Guard Escalation Engine", version=__version__)

    @app.get("/health")
    def health() -> dict:
        return {
            "status": "ok",
            "version": __version__,
            "sweep_interval_minutes": scheduler.settings.sweep_interval_minutes,
        }

    @app.post("/sweep")
    def run_sweep(now: Optional[datetime] = None):
        try:
            summary = scheduler.run_sweep(now=now)
        except Exception as exc:
            logger.exception("SLA sweep failed")
            return JSONResponse(status_code=500, content={"error": str(exc)})

        return {
            "message": "SLA escalation sweep completed",
            "entities_processed": summary.entities_processed,
            "warnings_sent": summary.warnings_sent,
            "escalations_sent": summary.escalations_sent,
            "conflicts": summary.conflicts,
            "errors": summary.errors,
            "dispatch_failures": summary.dispatch_failures,
            "skipped": summary.skipped,
        }

    return app
