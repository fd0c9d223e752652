"""
Holds the shared collection of download jobs.

The registry is the single source of truth for job state. It is passed as a
handle to everything that mutates jobs, and observers subscribe to it instead
of polling.
"""

import logging
from dataclasses import fields
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from .jobs import JOB_PHASES, JOB_STATUSES, DownloadJob

JobListener = Callable[[str, Dict[str, Any]], None]

_JOB_FIELDS = frozenset(f.name for f in fields(DownloadJob)) - {'job_id'}


class JobRegistry:
    """
    A field-level merge store for DownloadJob records.

    Every mutation happens synchronously on the event loop thread, so a merge
    is never interleaved with another merge. Updates to one job never touch
    another job's record.
    """

    def __init__(self):
        self.logger = logging.getLogger(__name__)
        self._jobs: Dict[str, DownloadJob] = {}
        self._listeners: List[JobListener] = []

    def __contains__(self, job_id: str) -> bool:
        return job_id in self._jobs

    def __len__(self) -> int:
        return len(self._jobs)

    def add(self, job: DownloadJob) -> DownloadJob:
        """Inserts a job, newest first when listed."""
        self._jobs[job.job_id] = job
        self._notify(job.job_id, {'status': job.status})
        return job

    def get(self, job_id: str) -> Optional[DownloadJob]:
        return self._jobs.get(job_id)

    def jobs(self) -> List[DownloadJob]:
        """Returns all jobs, most recently added first."""
        return list(reversed(self._jobs.values()))

    def update(self, job_id: str, **changes: Any) -> Optional[DownloadJob]:
        """
        Merges the named fields into an existing job.

        Each field is last-write-wins. A change to `status` also stamps
        `status_changed_at`.

        Args:
            job_id: The job to update.
            **changes: Field names and their new values.

        Returns:
            The updated job, or None if the job no longer exists.

        Raises:
            ValueError: If a field name is not a DownloadJob attribute, or a
                status or phase value is not one of the known ones.
        """
        unknown = set(changes) - _JOB_FIELDS
        if unknown:
            raise ValueError(f"Unknown job field(s): {', '.join(sorted(unknown))}")
        if 'status' in changes and changes['status'] not in JOB_STATUSES:
            raise ValueError(f"Unknown job status: {changes['status']}")
        if changes.get('phase') is not None and changes['phase'] not in JOB_PHASES:
            raise ValueError(f"Unknown job phase: {changes['phase']}")

        job = self._jobs.get(job_id)
        if job is None:
            self.logger.debug(f"Ignoring update for unknown job {job_id}: {sorted(changes)}")
            return None

        if 'status' in changes and changes['status'] != job.status and 'status_changed_at' not in changes:
            changes['status_changed_at'] = datetime.now()

        for name, value in changes.items():
            setattr(job, name, value)

        self._notify(job_id, changes)
        return job

    def remove(self, job_id: str) -> Optional[DownloadJob]:
        job = self._jobs.pop(job_id, None)
        if job is not None:
            self._notify(job_id, {})
        return job

    def subscribe(self, listener: JobListener) -> Callable[[], None]:
        """
        Registers a listener called with (job_id, changed_fields) after every mutation.

        Removal is reported with an empty change set.

        Returns:
            A function that unsubscribes the listener.
        """
        self._listeners.append(listener)

        def unsubscribe():
            if listener in self._listeners:
                self._listeners.remove(listener)
        return unsubscribe

    def _notify(self, job_id: str, changes: Dict[str, Any]):
        for listener in list(self._listeners):
            try:
                listener(job_id, changes)
            except Exception:
                self.logger.exception(f"Job listener failed for {job_id}")
