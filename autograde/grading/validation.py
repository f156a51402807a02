"""Pre-grading validation rules for submissions."""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Iterable, List, Literal, Optional

from .models import GradingConfig, QuestionType, Submission

LOG = logging.getLogger(__name__)

Severity = Literal["error", "warning"]


@dataclass(frozen=True)
class ValidationRule:
    """A named check; ``condition`` returns True when the submission passes."""
    rule: str
    severity: Severity
    message: str
    condition: Callable[[Submission, GradingConfig], bool]


@dataclass
class ValidationReport:
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    @property
    def can_proceed_to_grading(self) -> bool:
        return not self.errors

    def to_dict(self) -> dict:
        return {
            'errors': list(self.errors),
            'warnings': list(self.warnings),
            'can_proceed_to_grading': self.can_proceed_to_grading,
        }


def _has_all_required(submission: Submission, config: GradingConfig) -> bool:
    answered = {r.question_id for r in submission.responses}
    return all(q.question_id in answered for q in config.questions if q.required)


def _all_non_empty(submission: Submission, config: GradingConfig) -> bool:
    return all(r.joined().strip() for r in submission.responses)


def _aware(dt: datetime) -> datetime:
    return dt if dt.tzinfo is not None else dt.replace(tzinfo=timezone.utc)


def _on_time(submission: Submission, config: GradingConfig) -> bool:
    if config.due_date is None:
        return True
    return _aware(submission.submission_time) <= _aware(config.due_date)


def _files_attached(submission: Submission, config: GradingConfig) -> bool:
    for response in submission.responses:
        question = config.question(response.question_id)
        if question is not None and question.question_type == QuestionType.FILE_UPLOAD:
            if not response.file_upload_answers:
                return False
    return True


DEFAULT_RULES: List[ValidationRule] = [
    ValidationRule("response_count", "error",
                   "Submission must have responses for all required questions", _has_all_required),
    ValidationRule("response_not_empty", "error",
                   "All responses must have content", _all_non_empty),
    ValidationRule("submission_timing", "warning",
                   "Submission received after deadline", _on_time),
    ValidationRule("file_attachments", "warning",
                   "Some responses may have missing file attachments", _files_attached),
]


def validate_submission(submission: Submission, config: GradingConfig,
                        extra_rules: Optional[Iterable[ValidationRule]] = None) -> ValidationReport:
    """
    Run the default rules, then any ``extra_rules``, in order.

    A rule whose condition raises is recorded as an error so that a broken
    check can never let a submission through silently.
    """
    report = ValidationReport()
    rules = list(DEFAULT_RULES) + list(extra_rules or [])

    for rule in rules:
        try:
            passed = rule.condition(submission, config)
        except Exception as e:
            LOG.warning(f"Validation rule {rule.rule} raised on {submission.id}: {e}")
            report.errors.append(f"Validation rule {rule.rule} failed: {e}")
            continue

        if not passed:
            entry = f"{rule.rule}: {rule.message}"
            if rule.severity == "error":
                report.errors.append(entry)
            else:
                report.warnings.append(entry)

    LOG.debug(f"Validated {submission.id}: {len(report.errors)} errors, {len(report.warnings)} warnings")
    return report
