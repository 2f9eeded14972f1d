"""
Deployment pipeline.

A linear-with-fallback state machine that drives one workload to one revision
or reverts it:

    SYNC -> BACKUP -> BUILD -> VERIFY_BUILT -> PUBLISH -> APPLY -> AWAIT_HEALTH
                                                  |         |       |        |
                                                  +-failed--+    healthy   failed/timeout
                                                  |                 |        |
                                           RESTORE_LATEST        CLEANUP  ROLLBACK
                                                  |                 |        |
                                                  +-------------> DONE <-----+

Each state handler returns a typed (status, message) pair or raises a
DeployerError; ``_execute`` turns either into a StepResult and ``_next_state``
is the only place that decides where to go next. Nothing is retried. Every
step before APPLY aborts without touching the cluster. A failed PUBLISH or
APPLY puts ``latest`` back where the run found it, unless the set-image
request reached the cluster anyway; then the rollout is watched like any
other. Every failure after APPLY goes through ROLLBACK, which runs at most
once.

The pipeline is not safe against concurrent runs for the same workload; the
caller must hold the workload's lock (see push_deployer.locking).
"""

import logging
import time
import uuid
from enum import Enum
from typing import Awaitable, Callable, Dict, Optional, Tuple

from push_deployer.audit import audit_pipeline_event
from push_deployer.config.settings import DeployerConfig
from push_deployer.docker_image_cleanup import DockerImageCleanup
from push_deployer.docker_images import DockerImages
from push_deployer.exceptions import (
    EXIT_ABORTED,
    EXIT_FATAL,
    EXIT_ROLLED_BACK,
    EXIT_SUCCESS,
    CommandTimeout,
    DeployerError,
    FatalError,
    HealthFailure,
)
from push_deployer.kubernetes import KubectlClient, RolloutStatus
from push_deployer.logging_config import LogContext, log_step_outcome
from push_deployer.models import (
    PipelineOutcome,
    PipelineRun,
    Revision,
    StepResult,
    StepStatus,
    utc_now,
)
from push_deployer.source_control import GitSource
from push_deployer.tagging import TaggingProtocol

logger = logging.getLogger(__name__)


class PipelineState(str, Enum):
    """States of the deployment state machine, in order."""

    SYNC = "sync"
    BACKUP = "backup"
    BUILD = "build"
    VERIFY_BUILT = "verify_built"
    PUBLISH = "publish"
    APPLY = "apply"
    AWAIT_HEALTH = "await_health"
    CLEANUP = "cleanup"
    ROLLBACK = "rollback"
    RESTORE_LATEST = "restore_latest"
    DONE = "done"


_ON_SUCCESS: Dict[PipelineState, PipelineState] = {
    PipelineState.SYNC: PipelineState.BACKUP,
    PipelineState.BACKUP: PipelineState.BUILD,
    PipelineState.BUILD: PipelineState.VERIFY_BUILT,
    PipelineState.VERIFY_BUILT: PipelineState.PUBLISH,
    PipelineState.PUBLISH: PipelineState.APPLY,
    PipelineState.APPLY: PipelineState.AWAIT_HEALTH,
    PipelineState.AWAIT_HEALTH: PipelineState.CLEANUP,
    PipelineState.CLEANUP: PipelineState.DONE,
    PipelineState.ROLLBACK: PipelineState.DONE,
    PipelineState.RESTORE_LATEST: PipelineState.DONE,
}

# Any failure not listed here ends the run. Publish and Apply may already have
# moved latest, which is put back before the run ends.
_ON_FAILURE: Dict[PipelineState, PipelineState] = {
    PipelineState.PUBLISH: PipelineState.RESTORE_LATEST,
    PipelineState.APPLY: PipelineState.RESTORE_LATEST,
    PipelineState.AWAIT_HEALTH: PipelineState.ROLLBACK,
}

# Error category recorded when a step fails
_FAILURE_CATEGORY: Dict[PipelineState, str] = {
    PipelineState.SYNC: "local_failure",
    PipelineState.BUILD: "local_failure",
    PipelineState.VERIFY_BUILT: "local_failure",
    PipelineState.PUBLISH: "publish_failure",
    PipelineState.APPLY: "orchestrator_failure",
    PipelineState.AWAIT_HEALTH: "health_failure",
    PipelineState.ROLLBACK: "fatal",
    PipelineState.RESTORE_LATEST: "fatal",
}

_EXIT_CODES: Dict[PipelineOutcome, int] = {
    PipelineOutcome.DEPLOYED: EXIT_SUCCESS,
    PipelineOutcome.ABORTED: EXIT_ABORTED,
    PipelineOutcome.ROLLED_BACK: EXIT_ROLLED_BACK,
    PipelineOutcome.FATAL: EXIT_FATAL,
}

StepHandler = Callable[[], Awaitable[Tuple[StepStatus, str]]]


class DeploymentPipeline:
    """Drives one workload to one revision, or safely back."""

    def __init__(
        self,
        config: DeployerConfig,
        revision: Revision,
        branch: Optional[str] = None,
        run_id: Optional[str] = None,
        source: Optional[GitSource] = None,
        images: Optional[DockerImages] = None,
        kubectl: Optional[KubectlClient] = None,
        actor: str = "cli",
    ) -> None:
        """
        Initialize a pipeline run.

        Args:
            config: Complete deployer configuration
            revision: Revision to deploy
            branch: Deployment branch (defaults to the configured one)
            run_id: Run identifier (generated if omitted)
            source: Source control adapter
            images: Image adapter
            kubectl: Orchestrator adapter
            actor: Who triggered the run, for the audit trail
        """
        self.config = config
        self.workload = config.workload
        self.revision = revision
        self.actor = actor

        self.source = source or GitSource(
            self.workload.source_repo_path,
            remote=self.workload.remote,
            timeout=config.timeouts.sync,
        )
        self.images = images or DockerImages(config.build, config.timeouts)
        self.kubectl = kubectl or KubectlClient(
            command_timeout=config.timeouts.apply, undo_timeout=config.timeouts.undo
        )
        self.tagging = TaggingProtocol(
            self.images,
            self.workload.registry_url,
            self.workload.name,
            revision,
            latest_tag=self.workload.latest_tag,
            stable_tag=self.workload.stable_tag,
        )

        self.run_record = PipelineRun(
            run_id=run_id or uuid.uuid4().hex[:12],
            workload=self.workload.name,
            namespace=self.workload.namespace,
            branch=branch or self.workload.branch,
            revision=revision.full,
            commit_image=str(self.tagging.commit_image),
            latest_image=str(self.tagging.latest_image),
            stable_image=str(self.tagging.stable_image),
        )

        self._handlers: Dict[PipelineState, StepHandler] = {
            PipelineState.SYNC: self._sync,
            PipelineState.BACKUP: self._backup,
            PipelineState.BUILD: self._build,
            PipelineState.VERIFY_BUILT: self._verify_built,
            PipelineState.PUBLISH: self._publish,
            PipelineState.APPLY: self._apply,
            PipelineState.AWAIT_HEALTH: self._await_health,
            PipelineState.CLEANUP: self._cleanup,
            PipelineState.ROLLBACK: self._rollback,
            PipelineState.RESTORE_LATEST: self._restore_latest,
        }

        # What Publish and Apply changed, for RESTORE_LATEST and the Apply check
        self._previous_latest_id: Optional[str] = None
        self._latest_promoted = False
        self._latest_published = False
        self._applied = False

    @property
    def exit_code(self) -> int:
        """Process exit code for the run's outcome."""
        return _EXIT_CODES.get(self.run_record.outcome, EXIT_ABORTED)

    async def run(self) -> PipelineRun:
        """
        Execute the state machine to a terminal state.

        Returns:
            The completed run record; never raises for pipeline failures
        """
        run = self.run_record
        with LogContext(run_id=run.run_id, revision=self.revision.short, workload=run.workload):
            logger.info(
                f"Starting deployment {run.run_id} of {run.workload} at revision "
                f"{self.revision.short} ({run.branch})"
            )
            audit_pipeline_event(
                "run_started",
                run_id=run.run_id,
                revision=run.revision,
                actor=self.actor,
                details={"workload": run.workload, "branch": run.branch},
            )

            state = PipelineState.SYNC
            while state != PipelineState.DONE:
                result = await self._execute(state)
                state = self._next_state(state, result)

            run.completed_at = utc_now()
            self._log_outcome()
        return run

    def _next_state(self, state: PipelineState, result: StepResult) -> PipelineState:
        """Decide the next state and record terminal outcomes."""
        run = self.run_record

        if result.succeeded:
            if state == PipelineState.CLEANUP:
                run.outcome = PipelineOutcome.DEPLOYED
            elif state == PipelineState.ROLLBACK:
                run.outcome = PipelineOutcome.ROLLED_BACK
                run.message = f"{run.message}; rolled back"
            elif state == PipelineState.RESTORE_LATEST:
                run.outcome = PipelineOutcome.ABORTED
            return _ON_SUCCESS[state]

        if state == PipelineState.CLEANUP:
            # Best-effort: a failed prune does not undo a good deploy
            run.outcome = PipelineOutcome.DEPLOYED
            return PipelineState.DONE

        if state == PipelineState.APPLY and self._applied:
            logger.warning(
                f"set image reported {result.status.value} but {run.workload} already "
                f"references {run.commit_image}; watching the rollout"
            )
            return PipelineState.AWAIT_HEALTH

        run.error_category = _FAILURE_CATEGORY.get(state, "error")
        next_state = _ON_FAILURE.get(state, PipelineState.DONE)
        if next_state == PipelineState.DONE:
            if state in (PipelineState.ROLLBACK, PipelineState.RESTORE_LATEST):
                run.outcome = PipelineOutcome.FATAL
            else:
                run.outcome = PipelineOutcome.ABORTED

        if state == PipelineState.RESTORE_LATEST:
            run.message = f"{run.message}; restoring {run.latest_image} failed: {result.message}"
        else:
            run.message = f"{state.value} failed: {result.message}"
        return next_state

    async def _execute(self, state: PipelineState) -> StepResult:
        """Run one state handler and record its typed result."""
        result = StepResult(step=state.value, status=StepStatus.SUCCESS)
        started = time.monotonic()

        try:
            result.status, result.message = await self._handlers[state]()
        except CommandTimeout as e:
            result.status = StepStatus.TIMEOUT
            result.message = e.message
        except DeployerError as e:
            result.status = StepStatus.FAILURE
            result.message = e.message
            result.exit_code = e.exit_status
        except Exception as e:
            logger.error(f"Unexpected error in step {state.value}: {e}", exc_info=True)
            result.status = StepStatus.FAILURE
            result.message = f"{type(e).__name__}: {e}"

        result.finished_at = utc_now()
        result.duration_ms = int((time.monotonic() - started) * 1000)
        self.run_record.steps.append(result)

        log_step_outcome(
            self.run_record.run_id,
            state.value,
            result.status.value,
            message=result.message,
            exit_code=result.exit_code,
            duration_ms=result.duration_ms,
        )
        return result

    # ------------------------------------------------------------------
    # State handlers
    # ------------------------------------------------------------------

    async def _sync(self) -> Tuple[StepStatus, str]:
        head = await self.source.sync(self.run_record.branch, self.revision)
        return StepStatus.SUCCESS, f"checked out {head[:12]}"

    async def _backup(self) -> Tuple[StepStatus, str]:
        if await self.tagging.backup_current_as_stable():
            return StepStatus.SUCCESS, f"{self.tagging.stable_image} -> previous latest"
        return StepStatus.SKIPPED, "nothing to back up"

    async def _build(self) -> Tuple[StepStatus, str]:
        image_id = await self.images.build(
            self.workload.source_repo_path,
            self.tagging.commit_image,
            dockerfile=self.workload.dockerfile,
            build_args=self.workload.build_args,
        )
        return StepStatus.SUCCESS, f"built {self.tagging.commit_image} ({image_id[:19]})"

    async def _verify_built(self) -> Tuple[StepStatus, str]:
        image_id = await self.images.image_id(self.tagging.commit_image)
        if image_id is None:
            return StepStatus.FAILURE, f"{self.tagging.commit_image} not found after build"
        return StepStatus.SUCCESS, f"{self.tagging.commit_image} is {image_id[:19]}"

    async def _publish(self) -> Tuple[StepStatus, str]:
        self._previous_latest_id = await self.images.image_id(self.tagging.latest_image)
        await self.tagging.promote_to_latest()
        self._latest_promoted = True

        pushed = [self.tagging.commit_image, self.tagging.latest_image]
        if await self.tagging.stable_exists():
            pushed.append(self.tagging.stable_image)

        for image in pushed:
            await self.images.push(image)
            if image == self.tagging.latest_image:
                self._latest_published = True
        return StepStatus.SUCCESS, "pushed " + ", ".join(image.tag for image in pushed)

    async def _apply(self) -> Tuple[StepStatus, str]:
        run = self.run_record
        container = self.workload.container_name
        try:
            run.previous_image = await self.kubectl.current_image(
                run.workload, container, run.namespace
            )
        except DeployerError as e:
            logger.warning(f"Could not read current image of {run.workload}: {e}")

        try:
            await self.kubectl.set_image(run.workload, container, run.commit_image, run.namespace)
        except DeployerError:
            # A timed-out or dropped request may still have been accepted
            self._applied = await self._cluster_references_commit()
            raise
        self._applied = True
        return StepStatus.SUCCESS, f"{container}: {run.previous_image} -> {run.commit_image}"

    async def _cluster_references_commit(self) -> bool:
        run = self.run_record
        try:
            image = await self.kubectl.current_image(
                run.workload, self.workload.container_name, run.namespace
            )
        except DeployerError as e:
            logger.error(
                f"Cannot tell whether deployment/{run.workload} was updated to "
                f"{run.commit_image}: {e}"
            )
            return False
        return image == run.commit_image

    async def _await_health(self) -> Tuple[StepStatus, str]:
        run = self.run_record
        timeout = self.config.timeouts.rollout
        status = await self.kubectl.rollout_status(run.workload, run.namespace, timeout)
        if status == RolloutStatus.HEALTHY:
            return StepStatus.SUCCESS, "rollout complete"
        if status == RolloutStatus.TIMEOUT:
            return StepStatus.TIMEOUT, f"not healthy within {timeout:g}s"
        raise HealthFailure(f"rollout of {run.commit_image} failed")

    async def _cleanup(self) -> Tuple[StepStatus, str]:
        if not self.config.cleanup.enabled:
            return StepStatus.SKIPPED, "cleanup disabled"

        cleanup = DockerImageCleanup(self.images, self.config.cleanup.revisions_to_keep)
        try:
            results = await cleanup.cleanup(
                self.tagging.commit_image.repository_path,
                [self.tagging.commit_image, self.tagging.latest_image, self.tagging.stable_image],
            )
        except Exception as e:
            logger.warning(f"Image cleanup failed (non-critical): {e}")
            return StepStatus.FAILURE, f"cleanup failed: {e}"
        return (
            StepStatus.SUCCESS,
            f"removed {results['dangling']} dangling images, {results['revisions']} old tags",
        )

    async def _rollback(self) -> Tuple[StepStatus, str]:
        """
        Undo the rollout, then restore the registry's latest tag.

        If the undo fails the tags are left alone, so ``latest`` keeps
        describing what the cluster actually runs.
        """
        run = self.run_record
        logger.error(
            f"Deployment of {self.revision.short} failed to become healthy. "
            "Initiating automatic rollback to the last stable version..."
        )

        try:
            await self.kubectl.rollout_undo(run.workload, run.namespace)
        except DeployerError as e:
            raise FatalError(
                f"rollout undo failed ({e.message}); registry tags left unchanged",
                e.exit_status,
            ) from e

        try:
            await self.tagging.restore_stable_to_latest()
        except FatalError as e:
            raise FatalError(f"cluster reverted, but {e.message}") from e
        except DeployerError as e:
            raise FatalError(
                f"cluster reverted, but restoring {self.tagging.latest_image} failed: {e.message}",
                e.exit_status,
            ) from e

        return StepStatus.SUCCESS, f"reverted to previous generation; latest -> {run.stable_image}"

    async def _restore_latest(self) -> Tuple[StepStatus, str]:
        if not self._latest_promoted:
            return StepStatus.SKIPPED, "latest was not moved"
        message = await self.tagging.revert_latest(
            self._previous_latest_id, republish=self._latest_published
        )
        return StepStatus.SUCCESS, message

    def _log_outcome(self) -> None:
        run = self.run_record
        outcome = run.outcome

        if outcome == PipelineOutcome.DEPLOYED:
            logger.info(
                f"Deployment successful! {run.workload} is now running {self.revision.short}."
            )
        elif outcome == PipelineOutcome.ROLLED_BACK:
            logger.error(
                f"Deployment of {self.revision.short} rolled back. "
                f"{run.workload} is running the previous version."
            )
        elif outcome == PipelineOutcome.FATAL:
            logger.critical(
                f"Deployment of {self.revision.short} needs manual intervention: {run.message}"
            )
        else:
            logger.error(f"Deployment of {self.revision.short} aborted: {run.message}")

        audit_pipeline_event(
            outcome.value.replace("-", "_"),
            run_id=run.run_id,
            revision=run.revision,
            actor=self.actor,
            success=outcome == PipelineOutcome.DEPLOYED,
            details={
                "workload": run.workload,
                "error_category": run.error_category,
                "message": run.message,
                "previous_image": run.previous_image,
                "steps": {step.step: step.status.value for step in run.steps},
            },
        )
