"""
Source control adapter.

Brings the build working copy to exactly the revision being deployed.
"""

import logging
from pathlib import Path

from push_deployer.exceptions import LocalFailure
from push_deployer.models import Revision
from push_deployer.utils.command import CommandResult, run_command

logger = logging.getLogger(__name__)


class GitSource:
    """Git working copy used as the image build context."""

    def __init__(self, repo_path: str, remote: str = "origin", timeout: float = 120) -> None:
        """
        Initialize the adapter.

        Args:
            repo_path: Path of an existing git working copy
            remote: Remote to fetch from
            timeout: Bound for each git invocation, in seconds
        """
        self.repo_path = Path(repo_path)
        self.remote = remote
        self.timeout = timeout

    async def _git(self, *args: str) -> CommandResult:
        return await run_command("git", *args, cwd=self.repo_path, timeout=self.timeout)

    async def verify_working_copy(self) -> None:
        """Fail loudly if repo_path is not a git working copy."""
        if not self.repo_path.is_dir():
            raise LocalFailure(f"Application repository not found: {self.repo_path}")

        result = await self._git("rev-parse", "--is-inside-work-tree")
        if not result.ok or result.stdout.strip() != "true":
            raise LocalFailure(
                f"{self.repo_path} is not a git working copy: {result.output}",
                exit_status=result.returncode,
            )

    async def head(self) -> str:
        """Full hash of the checked-out commit."""
        result = await self._git("rev-parse", "HEAD")
        if not result.ok:
            raise LocalFailure(f"Cannot resolve HEAD: {result.output}", result.returncode)
        return result.stdout.strip()

    async def sync(self, branch: str, revision: Revision) -> str:
        """
        Fetch the branch and check out exactly the given revision.

        The revision must be reachable from the remote branch; a detached
        checkout makes re-runs of the same revision a no-op.

        Args:
            branch: Deployment branch
            revision: Revision to check out

        Returns:
            Full hash of the checked-out commit

        Raises:
            LocalFailure: On any git failure or revision mismatch
            CommandTimeout: If a git call exceeds its bound
        """
        await self.verify_working_copy()

        logger.info(f"Fetching {self.remote}/{branch} in {self.repo_path}")
        result = await self._git("fetch", "--prune", self.remote, branch)
        if not result.ok:
            raise LocalFailure(
                f"git fetch {self.remote} {branch} failed: {result.output}", result.returncode
            )

        tracking_ref = f"{self.remote}/{branch}"
        result = await self._git("merge-base", "--is-ancestor", revision.full, tracking_ref)
        if result.returncode == 1:
            raise LocalFailure(
                f"Revision {revision.short} is not on {tracking_ref}", result.returncode
            )
        if not result.ok:
            raise LocalFailure(
                f"Unknown revision {revision.short}: {result.output}", result.returncode
            )

        result = await self._git("checkout", "--force", "--detach", revision.full)
        if not result.ok:
            raise LocalFailure(
                f"git checkout {revision.short} failed: {result.output}", result.returncode
            )

        head = await self.head()
        if not head.startswith(revision.full):
            raise LocalFailure(f"Checked out {head[:7]} but expected {revision.short}")

        logger.info(f"Working copy at {head[:7]} ({branch})")
        return head
