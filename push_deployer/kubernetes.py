"""
Orchestrator adapter.

Drives a Kubernetes Deployment through kubectl: point a container at a new
image, watch the rollout, and undo to the previous generation.
"""

import logging
import math
from enum import Enum
from typing import Optional

from push_deployer.exceptions import CommandTimeout, OrchestratorError
from push_deployer.utils.command import CommandResult, run_command

logger = logging.getLogger(__name__)

# Extra seconds granted to kubectl beyond its own --timeout before we kill it
ROLLOUT_GRACE_SECONDS = 15


class RolloutStatus(str, Enum):
    """Result of waiting on a rollout."""

    HEALTHY = "healthy"
    TIMEOUT = "timeout"
    ERROR = "error"


class KubectlClient:
    """Thin async wrapper around the kubectl CLI."""

    def __init__(
        self,
        kubectl: str = "kubectl",
        command_timeout: float = 60,
        undo_timeout: float = 120,
    ) -> None:
        """
        Initialize the client.

        Args:
            kubectl: kubectl executable
            command_timeout: Bound for set-image and get calls
            undo_timeout: Bound for rollout undo
        """
        self.kubectl = kubectl
        self.command_timeout = command_timeout
        self.undo_timeout = undo_timeout

    async def _run(self, *args: str, timeout: float) -> CommandResult:
        return await run_command(self.kubectl, *args, timeout=timeout)

    async def current_image(
        self, deployment: str, container: str, namespace: str
    ) -> Optional[str]:
        """Image the deployment's container is specified to run, if it exists."""
        jsonpath = f'{{.spec.template.spec.containers[?(@.name=="{container}")].image}}'
        result = await self._run(
            "get",
            f"deployment/{deployment}",
            "-n",
            namespace,
            "-o",
            f"jsonpath={jsonpath}",
            timeout=self.command_timeout,
        )
        if not result.ok:
            raise OrchestratorError(
                f"Cannot read deployment/{deployment} in {namespace}: {result.output}",
                result.returncode,
            )
        image = result.stdout.strip()
        return image or None

    async def set_image(
        self, deployment: str, container: str, image: str, namespace: str
    ) -> None:
        """Point one container of a deployment at a new image."""
        logger.info(f"Updating deployment/{deployment} container {container} to {image}")
        result = await self._run(
            "set",
            "image",
            f"deployment/{deployment}",
            f"{container}={image}",
            "-n",
            namespace,
            timeout=self.command_timeout,
        )
        if not result.ok:
            raise OrchestratorError(
                f"kubectl set image failed for deployment/{deployment}: {result.output}",
                result.returncode,
            )

    async def rollout_status(
        self, deployment: str, namespace: str, timeout: float
    ) -> RolloutStatus:
        """
        Block until the rollout completes, fails, or the timeout elapses.

        Never raises for an unhealthy rollout; the caller decides what to do
        with TIMEOUT and ERROR.
        """
        logger.info(f"Watching rollout of deployment/{deployment} (timeout {timeout:g}s)")
        try:
            result = await self._run(
                "rollout",
                "status",
                f"deployment/{deployment}",
                "-n",
                namespace,
                "--watch=true",
                f"--timeout={math.ceil(timeout)}s",
                timeout=timeout + ROLLOUT_GRACE_SECONDS,
            )
        except CommandTimeout:
            logger.error(f"Rollout of deployment/{deployment} did not report within {timeout:g}s")
            return RolloutStatus.TIMEOUT

        if result.ok:
            logger.info(f"Rollout of deployment/{deployment} complete")
            return RolloutStatus.HEALTHY

        output = result.output.lower()
        if "timed out" in output:
            logger.error(f"Rollout of deployment/{deployment} timed out: {result.output}")
            return RolloutStatus.TIMEOUT

        logger.error(f"Rollout of deployment/{deployment} failed: {result.output}")
        return RolloutStatus.ERROR

    async def rollout_undo(self, deployment: str, namespace: str) -> None:
        """Revert the deployment to its previous generation."""
        logger.warning(f"Rolling back deployment/{deployment} in {namespace}")
        result = await self._run(
            "rollout",
            "undo",
            f"deployment/{deployment}",
            "-n",
            namespace,
            timeout=self.undo_timeout,
        )
        if not result.ok:
            raise OrchestratorError(
                f"kubectl rollout undo failed for deployment/{deployment}: {result.output}",
                result.returncode,
            )
