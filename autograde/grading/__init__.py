"""Submission grading pipeline and batch orchestration."""

from .ai_adapter import AIGradingAdapter, PydanticAIGradingAdapter
from .batch_grader import BatchGrader, JobStatusView, fold_progress
from .models import BatchJob, GradingConfig, GradingResult, RetryJob, Submission
from .pipeline import PipelineOptions, PipelineOutcome, SubmissionPipeline
from .rules import grade_response
from .validation import validate_submission

__all__ = [
    'AIGradingAdapter',
    'PydanticAIGradingAdapter',
    'BatchGrader',
    'JobStatusView',
    'fold_progress',
    'BatchJob',
    'RetryJob',
    'GradingConfig',
    'GradingResult',
    'Submission',
    'PipelineOptions',
    'PipelineOutcome',
    'SubmissionPipeline',
    'grade_response',
    'validate_submission'
]
