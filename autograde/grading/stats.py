"""Reporting over submissions and job records: pipeline stats, batch metrics, time estimates."""

import logging
import math
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from typing import Dict, Optional, Sequence

from .models import BatchJob, JobStatus, PipelineStage, Submission

LOG = logging.getLogger(__name__)

DEFAULT_SECONDS_PER_SUBMISSION = 2.0
BATCH_OVERHEAD_FACTOR = 1.1
ESTIMATE_HISTORY_SIZE = 5


def format_duration(seconds: float) -> str:
    """Render a duration like ``1h 2m 3s``, ``4m 5s`` or ``6s``."""
    total = int(max(seconds, 0))
    hours, rem = divmod(total, 3600)
    minutes, secs = divmod(rem, 60)
    if hours:
        return f"{hours}h {minutes}m {secs}s"
    if minutes:
        return f"{minutes}m {secs}s"
    return f"{secs}s"


@dataclass
class PipelineStats:
    total_submissions: int = 0
    stage_breakdown: Dict[str, int] = field(default_factory=dict)
    avg_processing_time: float = 0.0
    errors_count: int = 0
    warnings_count: int = 0
    success_rate: float = 0.0

    def to_dict(self) -> dict:
        return asdict(self)


def assignment_pipeline_stats(submissions: Sequence[Submission]) -> PipelineStats:
    """
    Summarize where an assignment's submissions sit in the pipeline.

    Submissions with no pipeline status count as ``received``. Processing time
    is averaged over graded and published submissions, measured from the first
    to the last history entry.
    """
    stats = PipelineStats(
        total_submissions=len(submissions),
        stage_breakdown={stage.value: 0 for stage in PipelineStage},
    )
    total_time = 0.0
    completed = 0

    for submission in submissions:
        status = submission.pipeline_status
        if status is None:
            stats.stage_breakdown[PipelineStage.RECEIVED.value] += 1
            continue

        stats.stage_breakdown[status.current_stage.value] += 1
        stats.errors_count += len(status.errors)
        stats.warnings_count += len(status.warnings)

        if status.current_stage in (PipelineStage.GRADED, PipelineStage.PUBLISHED) and status.stage_history:
            first, last = status.stage_history[0], status.stage_history[-1]
            total_time += (last.timestamp - first.timestamp).total_seconds()
            completed += 1

    if completed:
        stats.avg_processing_time = total_time / completed
    if submissions:
        done = (stats.stage_breakdown[PipelineStage.GRADED.value]
                + stats.stage_breakdown[PipelineStage.PUBLISHED.value])
        stats.success_rate = done / len(submissions) * 100
    return stats


@dataclass
class BatchMetrics:
    total_jobs: int = 0
    completed_jobs: int = 0
    failed_jobs: int = 0
    cancelled_jobs: int = 0
    total_submissions_processed: int = 0
    total_submissions_successful: int = 0
    avg_processing_time: float = 0.0
    avg_throughput_per_minute: float = 0.0
    success_rate: float = 0.0

    def to_dict(self) -> dict:
        return asdict(self)


def _duration(job) -> Optional[float]:
    ts = job.timestamps
    if ts.started is None or ts.completed is None:
        return None
    return (ts.completed - ts.started).total_seconds()


def batch_metrics(jobs: Sequence, since: Optional[datetime] = None,
                  window: timedelta = timedelta(hours=24)) -> BatchMetrics:
    """
    Aggregate batch jobs created within ``window`` of ``since`` (default: now).

    Retry jobs are excluded; only ``BatchJob`` records count.
    """
    cutoff = (since or datetime.now()) - window
    batch_jobs = [j for j in jobs if isinstance(j, BatchJob) and j.timestamps.created >= cutoff]

    metrics = BatchMetrics(
        total_jobs=len(batch_jobs),
        completed_jobs=sum(1 for j in batch_jobs if j.status == JobStatus.COMPLETED),
        failed_jobs=sum(1 for j in batch_jobs if j.status == JobStatus.FAILED),
        cancelled_jobs=sum(1 for j in batch_jobs if j.status == JobStatus.CANCELLED),
        total_submissions_processed=sum(j.progress.processed for j in batch_jobs),
        total_submissions_successful=sum(j.progress.successful for j in batch_jobs),
    )

    timed = [(j, _duration(j)) for j in batch_jobs if j.status == JobStatus.COMPLETED]
    timed = [(j, d) for j, d in timed if d is not None]
    if timed:
        total_duration = sum(d for _, d in timed)
        metrics.avg_processing_time = total_duration / len(timed)
        if total_duration > 0:
            metrics.avg_throughput_per_minute = sum(j.progress.processed for j, _ in timed) / (total_duration / 60)

    if metrics.total_submissions_processed:
        metrics.success_rate = metrics.total_submissions_successful / metrics.total_submissions_processed * 100
    return metrics


@dataclass
class BatchTimeEstimate:
    estimated_seconds: float
    estimated_formatted: str
    avg_seconds_per_submission: float
    recommended_batch_size: int
    based_on_jobs: int

    def to_dict(self) -> dict:
        return asdict(self)


def estimate_batch_time(recent_jobs: Sequence, submission_count: int, batch_size: int = 10,
                        inter_batch_delay: float = 0.5) -> BatchTimeEstimate:
    """
    Estimate wall time for grading ``submission_count`` submissions.

    Uses the per-submission rate of up to five recent completed batch jobs
    (falling back to two seconds), adds ten percent overhead and one
    inter-batch delay per batch.
    """
    completed = [j for j in recent_jobs
                 if isinstance(j, BatchJob) and j.status == JobStatus.COMPLETED and _duration(j) is not None]
    completed.sort(key=lambda j: j.timestamps.created, reverse=True)
    completed = completed[:ESTIMATE_HISTORY_SIZE]

    per_submission = DEFAULT_SECONDS_PER_SUBMISSION
    processed = sum(j.progress.processed for j in completed)
    if processed:
        per_submission = sum(_duration(j) for j in completed) / processed

    batches = math.ceil(submission_count / batch_size) if batch_size > 0 else 0
    estimate = per_submission * submission_count * BATCH_OVERHEAD_FACTOR + batches * inter_batch_delay
    LOG.debug(f"Estimated {estimate:.1f}s for {submission_count} submissions from {len(completed)} jobs")

    return BatchTimeEstimate(
        estimated_seconds=round(estimate, 3),
        estimated_formatted=format_duration(estimate),
        avg_seconds_per_submission=round(per_submission, 3),
        recommended_batch_size=batch_size,
        based_on_jobs=len(completed),
    )
