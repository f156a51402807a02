"""Tests for pipeline statistics and batch metrics."""

from datetime import datetime, timedelta

import pytest

from autograde.grading.models import (BatchJob, BatchProgress, JobStatus, JobTimestamps, PipelineStage,
                                      PipelineStatus, RetryJob, StageEntry, Submission)
from autograde.grading.stats import (assignment_pipeline_stats, batch_metrics, estimate_batch_time,
                                     format_duration)

NOW = datetime(2024, 5, 1, 12, 0)


def submission_at(stage, seconds=0, errors=(), warnings=()):
    if stage is None:
        return Submission(id="s-none", assignment_id="a", student_id="x")
    history = [
        StageEntry(stage=PipelineStage.RECEIVED, timestamp=NOW),
        StageEntry(stage=stage, timestamp=NOW + timedelta(seconds=seconds)),
    ]
    status = PipelineStatus(current_stage=stage, stage_history=history,
                            errors=list(errors), warnings=list(warnings))
    return Submission(id=f"s-{stage.value}-{seconds}", assignment_id="a", student_id="x", pipeline_status=status)


def job(status, processed, successful, duration=None, created=NOW, cls=BatchJob):
    timestamps = JobTimestamps(created=created, started=created)
    if duration is not None:
        timestamps.completed = created + timedelta(seconds=duration)
    return cls(id=f"j{processed}{status.value}", assignment_id="a", status=status, timestamps=timestamps,
               progress=BatchProgress(total=processed, processed=processed, successful=successful,
                                      failed=processed - successful))


@pytest.mark.parametrize("seconds,expected", [
    (0, "0s"),
    (59.9, "59s"),
    (61, "1m 1s"),
    (3725, "1h 2m 5s"),
])
def test_format_duration(seconds, expected):
    assert format_duration(seconds) == expected


def test_assignment_pipeline_stats():
    submissions = [
        submission_at(None),
        submission_at(PipelineStage.GRADED, seconds=4),
        submission_at(PipelineStage.PUBLISHED, seconds=6, warnings=["late"]),
        submission_at(PipelineStage.FAILED, seconds=1, errors=["Validation failed", "response_count"]),
    ]
    stats = assignment_pipeline_stats(submissions)

    assert stats.total_submissions == 4
    assert stats.stage_breakdown['received'] == 1
    assert stats.stage_breakdown['graded'] == 1
    assert stats.stage_breakdown['published'] == 1
    assert stats.stage_breakdown['failed'] == 1
    assert stats.stage_breakdown['reviewed'] == 0
    assert stats.errors_count == 2
    assert stats.warnings_count == 1
    assert stats.avg_processing_time == pytest.approx(5.0)
    assert stats.success_rate == pytest.approx(50.0)


def test_pipeline_stats_empty():
    stats = assignment_pipeline_stats([])
    assert stats.success_rate == 0
    assert stats.to_dict()['total_submissions'] == 0


def test_batch_metrics():
    jobs = [
        job(JobStatus.COMPLETED, processed=10, successful=9, duration=60),
        job(JobStatus.COMPLETED, processed=20, successful=20, duration=60),
        job(JobStatus.CANCELLED, processed=5, successful=5),
        job(JobStatus.FAILED, processed=0, successful=0),
        job(JobStatus.COMPLETED, processed=3, successful=3, duration=1, created=NOW - timedelta(days=3)),
        job(JobStatus.COMPLETED, processed=4, successful=4, duration=1, cls=RetryJob),
    ]
    metrics = batch_metrics(jobs, since=NOW + timedelta(hours=1))

    assert metrics.total_jobs == 4
    assert metrics.completed_jobs == 2
    assert metrics.cancelled_jobs == 1
    assert metrics.failed_jobs == 1
    assert metrics.total_submissions_processed == 35
    assert metrics.total_submissions_successful == 34
    assert metrics.avg_processing_time == pytest.approx(60)
    assert metrics.avg_throughput_per_minute == pytest.approx(15)
    assert metrics.success_rate == pytest.approx(34 / 35 * 100)


def test_estimate_without_history():
    estimate = estimate_batch_time([], submission_count=25, batch_size=10)
    assert estimate.avg_seconds_per_submission == 2.0
    assert estimate.estimated_seconds == pytest.approx(2.0 * 25 * 1.1 + 3 * 0.5)
    assert estimate.estimated_formatted == "56s"
    assert estimate.based_on_jobs == 0


def test_estimate_uses_recent_jobs():
    jobs = [job(JobStatus.COMPLETED, processed=10, successful=10, duration=30,
                created=NOW - timedelta(minutes=i)) for i in range(7)]
    estimate = estimate_batch_time(jobs, submission_count=100, batch_size=20)
    assert estimate.based_on_jobs == 5
    assert estimate.avg_seconds_per_submission == pytest.approx(3.0)
    assert estimate.estimated_formatted == "5m 32s"
