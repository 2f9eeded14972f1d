"""
Run history persistence.

Keeps the most recent pipeline runs in a JSON file under the state directory
so the gateway can report on runs it started in the background. This is an
observability record only; the registry and the cluster stay the systems of
record.
"""

import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional

import aiofiles  # type: ignore

from push_deployer.models import PipelineOutcome, PipelineRun

logger = logging.getLogger(__name__)


class RunHistory:
    """
    Bounded, persisted record of pipeline runs.

    Handles serialization of runs to JSON, atomic file writes, and marking
    runs cut short by a restart as aborted.
    """

    def __init__(self, state_dir: Path, max_runs: int = 100) -> None:
        """
        Initialize run history.

        Args:
            state_dir: Directory holding run_history.json
            max_runs: Number of runs kept, oldest dropped first
        """
        self.state_dir = Path(state_dir)
        self.max_runs = max_runs
        self.history_file = self.state_dir / "run_history.json"
        self._runs: Dict[str, PipelineRun] = {}

    def load(self) -> int:
        """
        Load runs from disk.

        Runs still marked running were interrupted by a restart of the
        process that owned them; they are marked aborted and saved back.

        Returns:
            Number of runs loaded
        """
        if not self.history_file.exists():
            return 0

        try:
            with open(self.history_file, "r") as f:
                state = json.load(f)
            runs = [PipelineRun(**data) for data in state.get("runs", [])]
        except (OSError, ValueError, TypeError) as e:
            logger.warning(f"Failed to load run history: {e}")
            return 0

        interrupted = False
        for run in runs:
            if run.outcome == PipelineOutcome.RUNNING:
                logger.warning(
                    f"Found in-progress run {run.run_id} ({run.revision[:7]}) after restart. "
                    "Marking as aborted."
                )
                run.outcome = PipelineOutcome.ABORTED
                run.error_category = "interrupted"
                run.message = "Run interrupted by deployer restart"
                run.completed_at = datetime.now(timezone.utc).isoformat()
                interrupted = True
            self._runs[run.run_id] = run

        self._trim()
        logger.info(f"Loaded run history with {len(self._runs)} runs")
        if interrupted:
            self.save_sync()
        return len(self._runs)

    def _trim(self) -> None:
        while len(self._runs) > self.max_runs:
            oldest = next(iter(self._runs))
            del self._runs[oldest]

    def _state(self) -> Dict[str, object]:
        return {
            "runs": [run.model_dump(mode="json") for run in self._runs.values()],
            "saved_at": datetime.now(timezone.utc).isoformat(),
        }

    def save_sync(self) -> None:
        """Save run history synchronously."""
        try:
            self.state_dir.mkdir(parents=True, exist_ok=True)
            temp_file = self.history_file.with_suffix(".tmp")
            with open(temp_file, "w") as f:
                json.dump(self._state(), f, indent=2)

            # Atomic rename
            temp_file.replace(self.history_file)
            logger.debug(f"Saved run history with {len(self._runs)} runs")
        except OSError as e:
            logger.error(f"Failed to save run history: {e}")

    async def save_async(self) -> None:
        """Save run history without blocking the event loop on the write."""
        try:
            self.state_dir.mkdir(parents=True, exist_ok=True)
            temp_file = self.history_file.with_suffix(".tmp")
            async with aiofiles.open(temp_file, "w") as f:
                await f.write(json.dumps(self._state(), indent=2))

            temp_file.replace(self.history_file)
            logger.debug(f"Saved run history with {len(self._runs)} runs")
        except OSError as e:
            logger.error(f"Failed to save run history: {e}")

    async def record(self, run: PipelineRun) -> None:
        """Insert or update a run and persist the history."""
        self._runs[run.run_id] = run
        self._trim()
        await self.save_async()

    def get(self, run_id: str) -> Optional[PipelineRun]:
        return self._runs.get(run_id)

    def recent(self, limit: int = 20) -> List[PipelineRun]:
        """Most recent runs first."""
        runs = list(self._runs.values())
        runs.reverse()
        return runs[:limit]

    def active(self) -> List[PipelineRun]:
        return [run for run in self._runs.values() if not run.finished]
