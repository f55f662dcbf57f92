"""no-match-scheduler: age out documents that never found a transaction."""

import logging
from datetime import datetime, timedelta
from typing import Callable

from ..jobs.base import JobContext, Processor, utcnow
from ..models import SweepResult
from ..schemas import NoMatchSchedulerPayload
from ..storage.database import DatabaseClient

logger = logging.getLogger(__name__)

# Daily, early morning UTC
SWEEP_CRON = "0 2 * * *"
SWEEP_SCHEDULE_KEY = "no-match-sweep"


class NoMatchSchedulerProcessor(Processor):
    """Moves unmatched pending items older than the cutoff to no_match.

    Items created exactly ``cutoff_days`` ago are left alone; only strictly
    older ones move. The sweep only runs in production and staging.

    Args:
        db: Database client
        enabled: Whether this environment may run the sweep
        cutoff_days: Age after which a pending item is given up on
        clock: Source of "now" (UTC)
    """

    name = "no-match-scheduler"
    payload_schema = NoMatchSchedulerPayload

    def __init__(
        self,
        db: DatabaseClient,
        enabled: bool,
        cutoff_days: int = 90,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.db = db
        self.enabled = enabled
        self.cutoff_days = cutoff_days
        self._clock = clock

    def process(self, payload: NoMatchSchedulerPayload, ctx: JobContext) -> dict:
        if not self.enabled:
            logger.info("No-match sweep skipped outside production")
            return SweepResult(skipped=True).model_dump(mode="json")

        cutoff = self._clock() - timedelta(days=self.cutoff_days)
        per_team = self.db.mark_stale_pending_as_no_match(cutoff)
        result = SweepResult(cutoff=cutoff, total_updated=sum(per_team.values()), per_team=per_team)

        for team_id, count in sorted(per_team.items()):
            logger.info(f"Marked {count} inbox items as no_match for team {team_id}")
        logger.info(f"No-match sweep moved {result.total_updated} items created before {cutoff.isoformat()}")
        return result.model_dump(mode="json")
