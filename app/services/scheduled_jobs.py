"""
Compliance Journey Platform
Scheduled Jobs.

Concrete job implementations run by SchedulerService.

Jobs:
    - journey_snapshot_daily: records today's progress snapshot for every
      non-cancelled journey so velocity and the progress series have data
      even on days without step activity
"""

from __future__ import annotations

import logging
from typing import Any

from app.services.journey_snapshot import record_all_snapshots
from app.services.scheduler_service import register_job

logger = logging.getLogger(__name__)


@register_job("journey_snapshot_daily")
def snapshot_all_journeys(app) -> dict[str, Any]:
    """Record today's progress snapshot for every non-cancelled journey."""
    result = record_all_snapshots()
    if result["failed"]:
        logger.warning("journey_snapshot_daily: %d journey(s) failed", result["failed"])
    return result
