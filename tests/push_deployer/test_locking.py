"""
Tests for per-workload run locks.
"""

import asyncio
import fcntl
import os

import pytest

from push_deployer.exceptions import RunInProgressError
from push_deployer.locking import WorkloadLocks


class TestWorkloadLocks:
    @pytest.fixture
    def locks(self, tmp_path):
        return WorkloadLocks(tmp_path / "state", poll_interval=0.01)

    @pytest.mark.asyncio
    async def test_hold_writes_lock_file(self, locks):
        async with locks.hold("web"):
            assert locks.is_locked("web")
            assert locks.lock_path("web").read_text().strip() == str(os.getpid())

        assert not locks.is_locked("web")

    @pytest.mark.asyncio
    async def test_reject_when_held_in_process(self, locks):
        async with locks.hold("web"):
            with pytest.raises(RunInProgressError):
                async with locks.hold("web", wait=False):
                    pass

    @pytest.mark.asyncio
    async def test_workloads_are_independent(self, locks):
        async with locks.hold("web"):
            async with locks.hold("worker", wait=False):
                assert locks.is_locked("worker")

    @pytest.mark.asyncio
    async def test_queued_runs_do_not_overlap(self, locks):
        events = []

        async def run(name):
            async with locks.hold("web"):
                events.append(f"start {name}")
                await asyncio.sleep(0.01)
                events.append(f"end {name}")

        await asyncio.gather(run("a"), run("b"))

        assert events in (
            ["start a", "end a", "start b", "end b"],
            ["start b", "end b", "start a", "end a"],
        )

    @pytest.mark.asyncio
    async def test_file_lock_held_by_another_process(self, locks):
        """A lock taken on the file outside this registry counts as held."""
        path = locks.lock_path("web")
        path.parent.mkdir(parents=True, exist_ok=True)
        # flock locks belong to the open file description, so a second open
        # of the same path conflicts even within one process
        fd = os.open(path, os.O_RDWR | os.O_CREAT)
        fcntl.flock(fd, fcntl.LOCK_EX)
        try:
            with pytest.raises(RunInProgressError, match="another process"):
                async with locks.hold("web", wait=False):
                    pass
        finally:
            fcntl.flock(fd, fcntl.LOCK_UN)
            os.close(fd)

    @pytest.mark.asyncio
    async def test_waits_for_file_lock_release(self, locks):
        path = locks.lock_path("web")
        path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(path, os.O_RDWR | os.O_CREAT)
        fcntl.flock(fd, fcntl.LOCK_EX)

        async def release_soon():
            await asyncio.sleep(0.05)
            fcntl.flock(fd, fcntl.LOCK_UN)
            os.close(fd)

        releaser = asyncio.create_task(release_soon())
        async with locks.hold("web"):
            assert releaser.done()
        await releaser

    def test_lock_path_sanitizes_name(self, locks):
        assert locks.lock_path("../web app").name == ".._web_app.lock"
