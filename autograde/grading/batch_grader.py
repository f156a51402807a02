"""Batch grader: run many submissions through the pipeline in sequential, concurrency-capped batches."""

import asyncio
import logging
import time
import uuid
import yaml
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from tqdm.asyncio import tqdm

from autograde.libs.config_loader import ConfigType, get_config
from .errors import BatchItemError, JobStateError, NotFoundError
from .models import (BatchItemResult, BatchJob, BatchProgress, BatchSettings, GradingJob,
                     ItemStatus, JobStatus, JobTimestamps, PipelineStage, RetryJob)
from .pipeline import PipelineOptions, SubmissionPipeline
from .stores import JobStore

LOG = logging.getLogger(__name__)


async def _pause(seconds: float):
    await asyncio.sleep(seconds)


def fold_progress(progress: BatchProgress, results: List[BatchItemResult]) -> BatchProgress:
    """Add one joined batch of item results to the cumulative counters."""
    successful = sum(1 for r in results if r.status == ItemStatus.SUCCESS)
    failed = sum(1 for r in results if r.status == ItemStatus.FAILED)
    skipped = sum(1 for r in results if r.status == ItemStatus.SKIPPED)
    return BatchProgress(
        total=progress.total,
        processed=progress.processed + len(results),
        successful=progress.successful + successful,
        failed=progress.failed + failed,
        skipped=progress.skipped + skipped,
    )


def settings_from_configs(configs: ConfigType, **overrides) -> BatchSettings:
    """Build BatchSettings from ``grading.batch.*`` with keyword overrides."""
    values = {
        'batch_size': get_config("grading.batch.batch_size", configs, default=10),
        'max_concurrency': get_config("grading.batch.max_concurrency", configs, default=3),
        'skip_already_graded': get_config("grading.batch.skip_already_graded", configs, default=True),
        'auto_publish': get_config("grading.batch.auto_publish", configs, default=False),
    }
    values.update({k: v for k, v in overrides.items() if v is not None})
    return BatchSettings(**values)


@dataclass
class JobStatusView:
    """Read-only snapshot of a job for pollers."""
    job_id: str
    status: JobStatus
    progress: BatchProgress
    results: List[BatchItemResult] = field(default_factory=list)
    timestamps: Optional[JobTimestamps] = None
    errors: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        data = {
            'job_id': self.job_id,
            'status': self.status.value,
            'progress': self.progress.model_dump(),
            'results': [r.model_dump(mode='json') for r in self.results],
        }
        if self.timestamps:
            data['timestamps'] = self.timestamps.model_dump(mode='json')
        if self.errors:
            data['errors'] = list(self.errors)
        return data


class BatchGrader:
    """Grade an assignment's submissions as a tracked job."""

    def __init__(self, configs: ConfigType, pipeline: SubmissionPipeline, jobs: JobStore,
                 show_progress: Optional[bool] = None):
        """
        Initialize the batch grader.

        Args:
            configs: Configuration dictionary
            pipeline: Pipeline used for every item; its stores are shared
            jobs: Job record store
            show_progress: Show a tqdm progress bar (overrides config)
        """
        self.configs = configs
        self.pipeline = pipeline
        self.submissions = pipeline.submissions
        self.jobs = jobs

        self.stagger_delay = get_config("grading.batch.stagger_delay_seconds", configs, default=0.1)
        self.inter_batch_delay = get_config("grading.batch.inter_batch_delay_seconds", configs, default=0.5)
        if show_progress is not None:
            self.show_progress = show_progress
        else:
            self.show_progress = get_config("grading.batch.show_progress", configs, default=False)

        LOG.info(f"BatchGrader initialized with stagger={self.stagger_delay}s, "
                 f"inter_batch_delay={self.inter_batch_delay}s")

    # ------------------------------------------------------------------
    # Job lifecycle
    # ------------------------------------------------------------------

    async def _get_job(self, job_id: str) -> GradingJob:
        job = await self.jobs.get(job_id)
        if job is None:
            raise NotFoundError(f"Job {job_id} not found")
        return job

    async def _select(self, assignment_id: str, submission_ids: Optional[List[str]]):
        candidates = await self.submissions.query_by_assignment(assignment_id)
        if submission_ids is None:
            return candidates
        by_id = {s.id: s for s in candidates}
        dropped = [i for i in submission_ids if i not in by_id]
        if dropped:
            LOG.warning(f"Ignoring {len(dropped)} submissions not in assignment {assignment_id}")
        return [by_id[i] for i in submission_ids if i in by_id]

    async def create_job(self, assignment_id: str, settings: Optional[BatchSettings] = None,
                         submission_ids: Optional[List[str]] = None) -> BatchJob:
        """
        Create a pending job for an assignment.

        Raises:
            ConfigurationMissingError: If the assignment has no grading configuration
        """
        await self.pipeline.load_config(assignment_id)
        settings = settings or settings_from_configs(self.configs)

        selected = await self._select(assignment_id, submission_ids)
        if settings.skip_already_graded:
            selected = [s for s in selected if not s.auto_graded]

        job = BatchJob(
            id=f"job_{uuid.uuid4().hex[:12]}",
            assignment_id=assignment_id,
            submission_ids=[s.id for s in selected],
            settings=settings,
            progress=BatchProgress(total=len(selected)),
        )
        LOG.info(f"Created batch job {job.id} for {assignment_id} with {len(selected)} submissions")
        return await self.jobs.create(job)

    async def create_retry_job(self, assignment_id: str, submission_ids: Optional[List[str]] = None,
                               settings: Optional[BatchSettings] = None) -> RetryJob:
        """Create a pending job over submissions whose pipeline ended in ``failed``."""
        await self.pipeline.load_config(assignment_id)
        settings = settings or settings_from_configs(self.configs)

        selected = await self._select(assignment_id, submission_ids)
        selected = [s for s in selected if s.current_stage == PipelineStage.FAILED]

        job = RetryJob(
            id=f"retry_{uuid.uuid4().hex[:12]}",
            assignment_id=assignment_id,
            submission_ids=[s.id for s in selected],
            settings=settings,
            progress=BatchProgress(total=len(selected)),
            selected_from="explicit" if submission_ids is not None else "assignment",
        )
        LOG.info(f"Created retry job {job.id} for {assignment_id} with {len(selected)} failed submissions")
        return await self.jobs.create(job)

    async def execute_job(self, job_id: str) -> GradingJob:
        """
        Run a pending job to completion.

        Item failures are recorded in the job's results. Anything that breaks
        the orchestration itself marks the job failed and is re-raised.
        """
        job = await self._get_job(job_id)
        if job.status != JobStatus.PENDING:
            raise JobStateError(f"Job {job_id} is {job.status.value}; only pending jobs can be executed")

        started = job.timestamps.model_copy(update={'started': datetime.now()})
        await self.jobs.patch(job_id, {'status': JobStatus.RUNNING, 'timestamps': started})
        LOG.info(f"Starting job {job_id}: {len(job.submission_ids)} submissions")

        try:
            await self.pipeline.load_config(job.assignment_id)
            return await self._run_batches(job_id)
        except Exception as e:
            LOG.error(f"Job {job_id} failed: {e}")
            current = await self._get_job(job_id)
            await self.jobs.patch(job_id, {
                'status': JobStatus.FAILED,
                'errors': current.errors + [str(e)],
                'timestamps': current.timestamps.model_copy(update={'completed': datetime.now()}),
            })
            raise

    async def run_job(self, assignment_id: str, settings: Optional[BatchSettings] = None,
                      submission_ids: Optional[List[str]] = None) -> GradingJob:
        job = await self.create_job(assignment_id, settings, submission_ids)
        return await self.execute_job(job.id)

    async def retry_failed(self, assignment_id: str, submission_ids: Optional[List[str]] = None,
                           settings: Optional[BatchSettings] = None) -> GradingJob:
        job = await self.create_retry_job(assignment_id, submission_ids, settings)
        return await self.execute_job(job.id)

    async def cancel_job(self, job_id: str) -> GradingJob:
        """
        Request cancellation. A running job stops before its next batch; the
        batch in flight finishes.

        Raises:
            JobStateError: If the job is already completed, failed or cancelled
        """
        job = await self._get_job(job_id)
        if job.is_terminal:
            raise JobStateError(f"Cannot cancel job {job_id} with status {job.status.value}")
        LOG.info(f"Cancelling job {job_id}")
        return await self.jobs.patch(job_id, {
            'status': JobStatus.CANCELLED,
            'timestamps': job.timestamps.model_copy(update={'completed': datetime.now()}),
        })

    async def get_job_status(self, job_id: str) -> JobStatusView:
        job = await self._get_job(job_id)
        return JobStatusView(
            job_id=job.id,
            status=job.status,
            progress=job.progress,
            results=job.results,
            timestamps=job.timestamps,
            errors=job.errors,
        )

    async def list_jobs(self, assignment_id: str) -> List[GradingJob]:
        return await self.jobs.list_by_assignment(assignment_id)

    # ------------------------------------------------------------------
    # Batch loop
    # ------------------------------------------------------------------

    async def _run_batches(self, job_id: str) -> GradingJob:
        job = await self._get_job(job_id)
        settings = job.settings
        retry = isinstance(job, RetryJob)
        ids = job.submission_ids
        batches = [ids[i:i + settings.batch_size] for i in range(0, len(ids), settings.batch_size)]
        semaphore = asyncio.Semaphore(settings.max_concurrency)

        progress_bar = tqdm(total=len(ids), desc="Grading submissions", disable=not self.show_progress)
        try:
            for n, batch in enumerate(batches):
                current = await self._get_job(job_id)
                if current.status == JobStatus.CANCELLED:
                    LOG.info(f"Job {job_id} cancelled after {current.progress.processed} submissions")
                    return current

                LOG.debug(f"Job {job_id}: batch {n + 1}/{len(batches)} ({len(batch)} submissions)")
                results = await self._run_batch(batch, settings, semaphore, retry, progress_bar)

                current = await self._get_job(job_id)
                await self.jobs.patch(job_id, {
                    'progress': fold_progress(current.progress, results),
                    'results': current.results + results,
                    'total_tokens': current.total_tokens + sum(r.tokens_used for r in results),
                    'total_cost': current.total_cost + sum(r.cost for r in results),
                })

                if n < len(batches) - 1:
                    await _pause(self.inter_batch_delay)
        finally:
            progress_bar.close()

        current = await self._get_job(job_id)
        if current.status == JobStatus.CANCELLED:
            return current
        completed = await self.jobs.patch(job_id, {
            'status': JobStatus.COMPLETED,
            'timestamps': current.timestamps.model_copy(update={'completed': datetime.now()}),
        })
        p = completed.progress
        LOG.info(f"Job {job_id} completed: {p.successful} successful, {p.failed} failed, {p.skipped} skipped")
        return completed

    async def _run_batch(self, batch: List[str], settings: BatchSettings, semaphore: asyncio.Semaphore,
                         retry: bool, progress_bar) -> List[BatchItemResult]:

        async def grade_with_semaphore(index: int, submission_id: str) -> BatchItemResult:
            if index and self.stagger_delay:
                await _pause(index * self.stagger_delay)
            async with semaphore:
                result = await self._grade_single_submission_async(submission_id, settings, retry)
            progress_bar.update(1)
            return result

        outcomes = await asyncio.gather(
            *(grade_with_semaphore(i, sid) for i, sid in enumerate(batch)),
            return_exceptions=True,
        )

        results = []
        for submission_id, outcome in zip(batch, outcomes):
            if isinstance(outcome, BatchItemResult):
                results.append(outcome)
            elif isinstance(outcome, Exception):
                LOG.warning(f"Unexpected error grading {submission_id}: {outcome}")
                results.append(BatchItemResult(submission_id=submission_id, status=ItemStatus.FAILED,
                                               message=str(outcome)))
            else:
                raise outcome
        return results

    async def _grade_single_submission_async(self, submission_id: str, settings: BatchSettings,
                                             retry: bool = False) -> BatchItemResult:
        """
        Grade one submission. Never raises for item-level problems; they become
        a failed BatchItemResult.
        """
        start = time.monotonic()
        try:
            submission = await self.submissions.get(submission_id)
            if submission is None:
                raise BatchItemError(submission_id, "Submission not found")
            if not retry and settings.skip_already_graded and submission.auto_graded:
                LOG.debug(f"Skipping already graded submission {submission_id}")
                return BatchItemResult(submission_id=submission_id, status=ItemStatus.SKIPPED,
                                       message="Already graded")

            options = PipelineOptions(
                auto_publish=settings.auto_publish,
                use_ai=settings.use_ai,
                grading_rules=settings.grading_rules,
            )
            if retry:
                outcome = await self.pipeline.retry_submission(submission_id, options)
            else:
                outcome = await self.pipeline.process_submission(submission_id, options)

            elapsed = time.monotonic() - start
            if outcome.success:
                LOG.debug(f"Graded {submission_id}: {outcome.grading.total_score}/{outcome.grading.total_possible}")
                return BatchItemResult(
                    submission_id=submission_id,
                    status=ItemStatus.SUCCESS,
                    message=outcome.message,
                    score=outcome.grading.total_score,
                    processing_time=elapsed,
                    tokens_used=outcome.grading.tokens_used,
                    cost=outcome.grading.cost,
                )

            message = outcome.error or "; ".join(outcome.errors) or outcome.message
            LOG.warning(f"Failed: {submission_id} - {message}")
            return BatchItemResult(submission_id=submission_id, status=ItemStatus.FAILED,
                                   message=message, processing_time=elapsed)

        except Exception as e:
            LOG.warning(f"Error grading {submission_id}: {e}")
            return BatchItemResult(submission_id=submission_id, status=ItemStatus.FAILED,
                                   message=str(e), processing_time=time.monotonic() - start)

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    def save_summary(self, job: GradingJob, output_path: Path):
        """
        Save a job summary to a YAML file.

        Args:
            job: Job record, typically the return value of execute_job
            output_path: Path to save summary file
        """
        scored = [r for r in job.results if r.status == ItemStatus.SUCCESS and r.score is not None]
        summary = {
            'grading_summary': {
                'timestamp': datetime.now().isoformat(),
                'job_id': job.id,
                'kind': job.kind,
                'assignment_id': job.assignment_id,
                'status': job.status.value,
                'total_submissions': job.progress.total,
                'processed': job.progress.processed,
                'successful': job.progress.successful,
                'failed': job.progress.failed,
                'skipped': job.progress.skipped,
                'average_score': sum(r.score for r in scored) / len(scored) if scored else 0,
                'total_tokens': job.total_tokens,
                'total_cost': job.total_cost,
            },
            'submissions': [r.model_dump(mode='json', exclude_none=True) for r in job.results],
        }
        if job.errors:
            summary['grading_summary']['errors'] = list(job.errors)

        with open(output_path, 'w') as f:
            yaml.dump(summary, f, default_flow_style=False, sort_keys=False)

        LOG.info(f"Summary saved to {output_path}")
