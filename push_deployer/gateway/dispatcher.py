"""
Background dispatch of pipeline runs.

The gateway answers a push notification immediately; the run itself happens
in a supervised asyncio task. Each task holds the workload's run lock for its
whole lifetime, and its completion is logged with the pipeline's exit code and
recorded in run history.
"""

import asyncio
import logging
from typing import Callable, Dict, Optional, Set

from push_deployer.config.settings import DeployerConfig
from push_deployer.exceptions import RunInProgressError
from push_deployer.locking import WorkloadLocks
from push_deployer.models import PipelineOutcome, PipelineRun, Revision, utc_now
from push_deployer.pipeline import DeploymentPipeline
from push_deployer.run_history import RunHistory

logger = logging.getLogger(__name__)

PipelineFactory = Callable[..., DeploymentPipeline]


class Dispatcher:
    """Starts pipeline runs in the background, one at a time per workload."""

    def __init__(
        self,
        config: DeployerConfig,
        history: RunHistory,
        locks: WorkloadLocks,
        pipeline_factory: Optional[PipelineFactory] = None,
    ) -> None:
        """
        Args:
            config: Deployer configuration passed to every pipeline
            history: Where runs are recorded
            locks: Per-workload run locks
            pipeline_factory: Builds a pipeline; defaults to DeploymentPipeline
        """
        self.config = config
        self.history = history
        self.locks = locks
        self.pipeline_factory = pipeline_factory or DeploymentPipeline
        self.reject_when_busy = config.gateway.concurrency_policy == "reject"

        self._background_tasks: Set[asyncio.Task] = set()
        # workload -> ids of runs holding or waiting for its lock
        self._in_flight: Dict[str, Set[str]] = {}

    def is_busy(self, workload: str) -> bool:
        return bool(self._in_flight.get(workload)) or self.locks.is_locked(workload)

    @property
    def active_runs(self) -> int:
        return sum(len(runs) for runs in self._in_flight.values())

    async def submit(self, revision: Revision, branch: str) -> PipelineRun:
        """
        Start a pipeline run for a revision.

        Args:
            revision: Revision to deploy
            branch: Branch the revision was pushed to

        Returns:
            The new run record (still running)

        Raises:
            RunInProgressError: Under the reject policy, if the workload is busy
        """
        workload = self.config.workload.name
        if self.reject_when_busy and self.is_busy(workload):
            raise RunInProgressError(f"A deployment of {workload} is already running")

        pipeline = self.pipeline_factory(
            self.config, revision, branch=branch, actor="webhook"
        )
        run = pipeline.run_record
        self._in_flight.setdefault(workload, set()).add(run.run_id)
        await self.history.record(run)

        task = asyncio.create_task(self._execute(pipeline))
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)

        logger.info(f"Dispatched run {run.run_id} for {workload} at {revision.short}")
        return run

    async def _execute(self, pipeline: DeploymentPipeline) -> None:
        run = pipeline.run_record
        workload = run.workload
        try:
            async with self.locks.hold(workload, wait=not self.reject_when_busy):
                await pipeline.run()
            logger.info(
                f"Deployment run {run.run_id} for revision {run.revision[:7]} finished: "
                f"{run.outcome.value} (exit code {pipeline.exit_code})"
            )
        except RunInProgressError as e:
            logger.warning(f"Run {run.run_id} not started: {e.message}")
            self._mark_aborted(run, e.category, e.message)
        except asyncio.CancelledError:
            logger.warning(f"Run {run.run_id} cancelled")
            self._mark_aborted(run, "cancelled", "Run cancelled by deployer shutdown")
            raise
        except Exception as e:
            logger.error(f"Run {run.run_id} crashed: {e}", exc_info=True)
            self._mark_aborted(run, "error", f"Unexpected error: {e}")
        finally:
            self._in_flight.get(workload, set()).discard(run.run_id)
            await self.history.record(run)

    @staticmethod
    def _mark_aborted(run: PipelineRun, category: str, message: str) -> None:
        if run.finished:
            return
        run.outcome = PipelineOutcome.ABORTED
        run.error_category = category
        run.message = message
        run.completed_at = utc_now()

    async def wait_idle(self) -> None:
        """Wait for every dispatched run to finish."""
        while self._background_tasks:
            await asyncio.gather(*list(self._background_tasks), return_exceptions=True)

    async def shutdown(self, timeout: float = 30) -> None:
        """Give in-flight runs a grace period, then cancel what is left."""
        if not self._background_tasks:
            return
        logger.info(f"Waiting up to {timeout:g}s for {len(self._background_tasks)} runs")
        _, pending = await asyncio.wait(set(self._background_tasks), timeout=timeout)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
