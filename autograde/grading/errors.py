"""Exception taxonomy for grading, the submission pipeline and batch jobs."""

from typing import List, Optional


class GradingError(Exception):
    """Base class for all autograde errors."""


class NotFoundError(GradingError):
    """A submission or job record does not exist in its store."""


class ValidationError(GradingError):
    """Submission failed blocking validation rules; grading must not proceed."""

    def __init__(self, errors: List[str], warnings: Optional[List[str]] = None):
        self.errors = list(errors)
        self.warnings = list(warnings or [])
        super().__init__("Validation failed: " + "; ".join(self.errors))


class ConfigurationMissingError(GradingError):
    """No grading configuration exists for the assignment. Fatal for the whole operation."""

    def __init__(self, assignment_id: str):
        self.assignment_id = assignment_id
        super().__init__(f"Grading configuration not found for assignment {assignment_id}")


class QuestionNotFoundError(GradingError):
    """A response references a question absent from the grading configuration."""

    def __init__(self, question_id: str):
        self.question_id = question_id
        super().__init__(f"Question {question_id} not found in grading configuration")


class AlgorithmInputError(GradingError):
    """Malformed input to a deterministic grading algorithm."""


class ExternalServiceError(GradingError):
    """The AI grading service failed or timed out."""

    def __init__(self, message: str, retryable: bool = False,
                 status_code: Optional[int] = None, provider: Optional[str] = None):
        self.retryable = retryable
        self.status_code = status_code
        self.provider = provider
        super().__init__(message)


class BatchItemError(GradingError):
    """Processing a single submission inside a batch failed."""

    def __init__(self, submission_id: str, message: str):
        self.submission_id = submission_id
        super().__init__(f"{submission_id}: {message}")


class PipelineTransitionError(GradingError):
    """Attempted a pipeline stage change the state machine does not allow."""

    def __init__(self, current: Optional[str], target: str):
        self.current = current
        self.target = target
        super().__init__(f"Illegal pipeline transition {current} -> {target}")


class JobStateError(GradingError):
    """Operation not allowed for the job's current status."""
