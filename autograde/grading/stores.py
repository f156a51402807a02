"""Storage collaborators used by the pipeline and batch orchestrator.

The base classes define the async interfaces; the ``InMemory*`` classes back
tests and the command-line tool. Every read returns a deep copy so callers
never alias stored records.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from .errors import NotFoundError
from .models import GradingConfig, GradingJob, Submission

LOG = logging.getLogger(__name__)


class SubmissionStore:
    """Extension point for submission persistence."""

    async def get(self, submission_id: str) -> Optional[Submission]:
        raise NotImplementedError

    async def patch(self, submission_id: str, fields: Dict[str, Any]) -> Submission:
        raise NotImplementedError

    async def query_by_assignment(self, assignment_id: str) -> List[Submission]:
        raise NotImplementedError

    async def query_by_assignment_and_student(self, assignment_id: str,
                                              student_id: str) -> Optional[Submission]:
        raise NotImplementedError

    async def upsert(self, submission: Submission) -> Submission:
        raise NotImplementedError


class GradingConfigStore:
    """Extension point for per-assignment grading configuration."""

    async def get_by_assignment(self, assignment_id: str) -> Optional[GradingConfig]:
        raise NotImplementedError


class JobStore:
    """Extension point for batch job records. Status is observed by polling ``get``."""

    async def create(self, job: GradingJob) -> GradingJob:
        raise NotImplementedError

    async def patch(self, job_id: str, fields: Dict[str, Any]) -> GradingJob:
        raise NotImplementedError

    async def get(self, job_id: str) -> Optional[GradingJob]:
        raise NotImplementedError

    async def list_by_assignment(self, assignment_id: str) -> List[GradingJob]:
        raise NotImplementedError


class InMemorySubmissionStore(SubmissionStore):

    def __init__(self, submissions: Optional[List[Submission]] = None):
        self._records: Dict[str, Submission] = {}
        for submission in submissions or []:
            self._records[submission.id] = submission.model_copy(deep=True)

    async def get(self, submission_id: str) -> Optional[Submission]:
        record = self._records.get(submission_id)
        return record.model_copy(deep=True) if record else None

    async def patch(self, submission_id: str, fields: Dict[str, Any]) -> Submission:
        record = self._records.get(submission_id)
        if record is None:
            raise NotFoundError(f"Submission {submission_id} not found")
        updated = record.model_copy(update=fields, deep=True)
        self._records[submission_id] = updated
        return updated.model_copy(deep=True)

    async def query_by_assignment(self, assignment_id: str) -> List[Submission]:
        return [s.model_copy(deep=True) for s in self._records.values()
                if s.assignment_id == assignment_id]

    async def query_by_assignment_and_student(self, assignment_id: str,
                                              student_id: str) -> Optional[Submission]:
        for s in self._records.values():
            if s.assignment_id == assignment_id and s.student_id == student_id:
                return s.model_copy(deep=True)
        return None

    async def upsert(self, submission: Submission) -> Submission:
        """Insert, or replace the record for the same assignment and student keeping its id."""
        existing = await self.query_by_assignment_and_student(submission.assignment_id,
                                                              submission.student_id)
        if existing is not None:
            submission = submission.model_copy(update={'id': existing.id})
            LOG.debug(f"Replacing submission {existing.id} for student {submission.student_id}")
        self._records[submission.id] = submission.model_copy(deep=True)
        return submission.model_copy(deep=True)


class InMemoryGradingConfigStore(GradingConfigStore):

    def __init__(self, configs: Optional[List[GradingConfig]] = None):
        self._configs: Dict[str, GradingConfig] = {}
        for config in configs or []:
            self.put(config)

    def put(self, config: GradingConfig):
        self._configs[config.assignment_id] = config.model_copy(deep=True)

    async def get_by_assignment(self, assignment_id: str) -> Optional[GradingConfig]:
        config = self._configs.get(assignment_id)
        return config.model_copy(deep=True) if config else None


class InMemoryJobStore(JobStore):

    def __init__(self):
        self._jobs: Dict[str, GradingJob] = {}

    async def create(self, job: GradingJob) -> GradingJob:
        if job.id in self._jobs:
            raise ValueError(f"Job {job.id} already exists")
        self._jobs[job.id] = job.model_copy(deep=True)
        return job.model_copy(deep=True)

    async def patch(self, job_id: str, fields: Dict[str, Any]) -> GradingJob:
        job = self._jobs.get(job_id)
        if job is None:
            raise NotFoundError(f"Job {job_id} not found")
        updated = job.model_copy(update=fields, deep=True)
        self._jobs[job_id] = updated
        return updated.model_copy(deep=True)

    async def get(self, job_id: str) -> Optional[GradingJob]:
        job = self._jobs.get(job_id)
        return job.model_copy(deep=True) if job else None

    async def list_by_assignment(self, assignment_id: str) -> List[GradingJob]:
        jobs = [j for j in self._jobs.values() if j.assignment_id == assignment_id]
        jobs.sort(key=lambda j: j.timestamps.created, reverse=True)
        return [j.model_copy(deep=True) for j in jobs]
