"""
Per-workload run locks.

Two overlapping runs for the same workload could interleave Backup, Publish and
Apply and corrupt the stable tag, so a run holds its workload's lock from Sync
to its terminal state. The lock has two layers:

- an asyncio.Lock, serializing runs dispatched inside one gateway process
- an fcntl.flock on ``<state_dir>/<workload>.lock``, excluding other
  processes (a manual CLI run while the gateway is deploying)
"""

import asyncio
import fcntl
import logging
import os
import re
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator, Dict, Optional

from push_deployer.exceptions import RunInProgressError

logger = logging.getLogger(__name__)


class WorkloadLocks:
    """Registry of run locks, one per workload name."""

    def __init__(self, state_dir: Path, poll_interval: float = 2.0) -> None:
        """
        Args:
            state_dir: Directory holding the lock files
            poll_interval: Seconds between attempts on a file lock held elsewhere
        """
        self.state_dir = Path(state_dir)
        self.poll_interval = poll_interval
        self._locks: Dict[str, asyncio.Lock] = {}

    def lock_path(self, workload: str) -> Path:
        safe_name = re.sub(r"[^a-zA-Z0-9_.-]", "_", workload)
        return self.state_dir / f"{safe_name}.lock"

    def _process_lock(self, workload: str) -> asyncio.Lock:
        if workload not in self._locks:
            self._locks[workload] = asyncio.Lock()
        return self._locks[workload]

    def is_locked(self, workload: str) -> bool:
        """Is a run for this workload in flight in this process?"""
        lock = self._locks.get(workload)
        return lock is not None and lock.locked()

    def _try_file_lock(self, workload: str) -> Optional[int]:
        """Take the file lock without blocking; None if another process holds it."""
        path = self.lock_path(workload)
        path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(path, os.O_RDWR | os.O_CREAT, 0o644)
        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            os.close(fd)
            return None
        os.ftruncate(fd, 0)
        os.write(fd, f"{os.getpid()}\n".encode())
        return fd

    @staticmethod
    def _release_file_lock(fd: int) -> None:
        try:
            fcntl.flock(fd, fcntl.LOCK_UN)
        finally:
            os.close(fd)

    @asynccontextmanager
    async def hold(self, workload: str, wait: bool = True) -> AsyncIterator[None]:
        """
        Hold the workload's run lock for the duration of the block.

        Args:
            workload: Workload name
            wait: Queue behind a run in flight instead of failing

        Raises:
            RunInProgressError: If wait is False and the lock is held
        """
        process_lock = self._process_lock(workload)
        if not wait and process_lock.locked():
            raise RunInProgressError(f"A deployment of {workload} is already running")

        async with process_lock:
            fd = self._try_file_lock(workload)
            while fd is None:
                if not wait:
                    raise RunInProgressError(
                        f"A deployment of {workload} is running in another process "
                        f"(lock: {self.lock_path(workload)})"
                    )
                logger.info(f"Waiting for another process to release the {workload} lock")
                await asyncio.sleep(self.poll_interval)
                fd = self._try_file_lock(workload)

            logger.debug(f"Acquired run lock for {workload}")
            try:
                yield
            finally:
                self._release_file_lock(fd)
                logger.debug(f"Released run lock for {workload}")
