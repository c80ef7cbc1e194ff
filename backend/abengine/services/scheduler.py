"""Background reallocation loop."""
import asyncio
from typing import List

import structlog

from abengine.schemas.experiment import AllocationType
from abengine.services.experiments import ExperimentService

logger = structlog.get_logger()


class AllocationScheduler:
    """Periodically recalculate weights of running adaptive experiments.

    Each recalculation runs in a worker thread; the store commits weights in
    a single transaction, so cancelling the loop never leaves a partial write.
    A failed experiment keeps its previous weights and is retried on the next
    cycle.
    """

    def __init__(self, service: ExperimentService, poll_seconds: int = 300):
        self.service = service
        self.poll_seconds = poll_seconds

    async def run_once(self) -> List[str]:
        """One pass over running experiments. Returns ids whose weights changed."""
        experiments = await asyncio.to_thread(self.service.get_active_experiments)
        updated = []

        for experiment in experiments:
            if experiment.allocation.type == AllocationType.FIXED:
                continue
            try:
                variants = await asyncio.to_thread(self.service.recalculate_allocation, experiment.id)
            except Exception as e:
                logger.warning(
                    "reallocation_failed",
                    experiment_id=experiment.id,
                    error=str(e),
                    error_type=type(e).__name__
                )
                continue

            if variants is not None:
                updated.append(experiment.id)

        return updated

    async def run_forever(self) -> None:
        logger.info("allocation_scheduler_started", poll_seconds=self.poll_seconds)
        try:
            while True:
                await asyncio.sleep(self.poll_seconds)
                try:
                    updated = await self.run_once()
                except Exception as e:
                    logger.warning(
                        "reallocation_cycle_failed",
                        error=str(e),
                        error_type=type(e).__name__
                    )
                    continue
                if updated:
                    logger.info("reallocation_cycle_completed", updated=updated)
        except asyncio.CancelledError:
            logger.info("allocation_scheduler_stopped")
            raise
