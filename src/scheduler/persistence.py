"""
JSON snapshot store for the job queue.

The queue is in-memory by default. When a store is configured:
- Jobs are loaded once at queue construction
- Orphaned RUNNING jobs (process died mid-handler) are reset to PENDING
- A full snapshot is written after enqueue and clear, and once per drain

Snapshots are written to a temporary file beside the target and moved into
place with os.replace, so readers never observe a half-written file.
"""

import json
import logging
import os
from pathlib import Path
from typing import Iterable

from .entities import Job, JobStatus


logger = logging.getLogger(__name__)


class JsonQueueStore:
    """
    File-backed persistence for queue state.

    Format: JSON list of Job.to_dict() records.
    """

    def __init__(self, path: str | Path):
        """
        Initialize the store.

        Args:
            path: Snapshot file path. Parent directories are created on save.
        """
        self.path = Path(path)

    def exists(self) -> bool:
        return self.path.exists()

    # =========================================================================
    # Load / Recovery
    # =========================================================================

    def load(self) -> list[Job]:
        """
        Read all jobs from the snapshot.

        Returns an empty list if the file does not exist. Corrupt records are
        skipped with a warning; a file that is not valid JSON raises.

        Raises:
            ValueError: If the snapshot is not a JSON list
        """
        if not self.path.exists():
            return []

        with open(self.path, "r", encoding="utf-8") as f:
            data = json.load(f)

        if not isinstance(data, list):
            raise ValueError(f"Queue snapshot {self.path} is not a JSON list")

        jobs = []
        for record in data:
            try:
                jobs.append(Job.from_dict(record))
            except (KeyError, ValueError, TypeError) as e:
                logger.warning(f"Skipping unreadable job record in {self.path}: {e}")

        logger.info(f"Loaded {len(jobs)} jobs from {self.path}")
        return jobs

    def load_and_recover(self) -> list[Job]:
        """
        Load jobs and reset orphaned RUNNING jobs to PENDING.

        A RUNNING job in a snapshot means the previous process stopped while
        its handler was in flight. The attempt already counted stays counted.
        """
        jobs = self.load()
        recovered = 0
        for job in jobs:
            if job.status == JobStatus.RUNNING:
                job.status = JobStatus.PENDING
                job.started_at = None
                recovered += 1

        if recovered:
            logger.warning(
                f"Recovered {recovered} orphaned running job(s) from {self.path}"
            )
        return jobs

    # =========================================================================
    # Save
    # =========================================================================

    def save(self, jobs: Iterable[Job]) -> None:
        """Atomically replace the snapshot with the given jobs."""
        self.write_records([job.to_dict() for job in jobs])

    def write_records(self, records: list[dict]) -> None:
        """Atomically replace the snapshot with already-serialized jobs."""
        self.path.parent.mkdir(parents=True, exist_ok=True)

        tmp_path = self.path.with_name(self.path.name + ".tmp")
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump(records, f, ensure_ascii=False, indent=2, default=str)
        os.replace(tmp_path, self.path)

    def delete(self) -> bool:
        """Remove the snapshot file. Returns True if a file was removed."""
        if self.path.exists():
            self.path.unlink()
            return True
        return False
