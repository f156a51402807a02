"""Per-submission pipeline: received -> validated -> grading -> graded/failed -> published.

The pipeline owns the submission's :class:`PipelineStatus`. Every stage change
appends a :class:`StageEntry` and moves ``current_stage``; history is never
rewritten, so re-running a submission grows its history.
"""

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from .ai_adapter import AIGradingAdapter
from .errors import (ConfigurationMissingError, ExternalServiceError, GradingError,
                     NotFoundError, PipelineTransitionError, ValidationError)
from .models import (AIGradingConfig, AIGradingRequest, GradingConfig, GradingResult, GradingRule,
                     PipelineStage, PipelineStatus, Question, Response, StageEntry, Submission)
from .rules import grade_response
from .stores import GradingConfigStore, SubmissionStore
from .validation import ValidationReport, ValidationRule, validate_submission

LOG = logging.getLogger(__name__)

S = PipelineStage

# Allowed moves keyed by current stage (None = no pipeline status yet).
# Every stage may re-enter RECEIVED. REVIEWED is reserved: nothing moves into it.
TRANSITIONS: Dict[Optional[PipelineStage], frozenset] = {
    None: frozenset({S.RECEIVED}),
    S.RECEIVED: frozenset({S.RECEIVED, S.VALIDATED, S.GRADING, S.FAILED}),
    S.VALIDATED: frozenset({S.RECEIVED, S.GRADING, S.FAILED}),
    S.GRADING: frozenset({S.RECEIVED, S.GRADED, S.FAILED}),
    S.GRADED: frozenset({S.PUBLISHED, S.RECEIVED}),
    S.PUBLISHED: frozenset({S.RECEIVED}),
    S.REVIEWED: frozenset({S.PUBLISHED, S.RECEIVED}),
    S.FAILED: frozenset({S.RECEIVED, S.VALIDATED, S.GRADING, S.FAILED}),
}

AI_CORRECT_THRESHOLD = 0.8


@dataclass
class PipelineOptions:
    skip_validation: bool = False
    auto_publish: bool = False
    use_ai: bool = True
    grading_rules: List[GradingRule] = field(default_factory=list)
    extra_rules: List[ValidationRule] = field(default_factory=list)


@dataclass
class GradingSummary:
    total_score: float
    total_possible: float
    percentage: float
    questions_graded: int
    flagged_for_review: int = 0
    tokens_used: int = 0
    cost: float = 0.0


@dataclass
class PipelineOutcome:
    """What a caller sees after running the pipeline. Failures are returned, not raised."""
    submission_id: str
    success: bool
    stage: PipelineStage
    message: str
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    error: Optional[str] = None
    grading: Optional[GradingSummary] = None
    processing_time: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        data = {
            'submission_id': self.submission_id,
            'success': self.success,
            'stage': self.stage.value,
            'message': self.message,
            'processing_time': self.processing_time,
        }
        if self.errors:
            data['errors'] = list(self.errors)
        if self.warnings:
            data['warnings'] = list(self.warnings)
        if self.error:
            data['error'] = self.error
        if self.grading:
            data['total_score'] = self.grading.total_score
            data['total_possible'] = self.grading.total_possible
            data['percentage'] = self.grading.percentage
            data['questions_graded'] = self.grading.questions_graded
        return data


class SubmissionPipeline:
    """Drive one submission through validation, grading and publication."""

    def __init__(self, submissions: SubmissionStore, configs: GradingConfigStore,
                 ai_adapter: Optional[AIGradingAdapter] = None,
                 clock: Callable[[], datetime] = datetime.now):
        """
        Args:
            submissions: Submission store, read and patched per stage
            configs: Grading configuration store
            ai_adapter: Optional AI grading service for question types routed to AI
            clock: Source of stage timestamps
        """
        self.submissions = submissions
        self.configs = configs
        self.ai_adapter = ai_adapter
        self.clock = clock

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    async def load_config(self, assignment_id: str) -> GradingConfig:
        config = await self.configs.get_by_assignment(assignment_id)
        if config is None:
            raise ConfigurationMissingError(assignment_id)
        return config

    async def _get_submission(self, submission_id: str) -> Submission:
        submission = await self.submissions.get(submission_id)
        if submission is None:
            raise NotFoundError(f"Submission {submission_id} not found")
        return submission

    # ------------------------------------------------------------------
    # Stage transitions
    # ------------------------------------------------------------------

    async def transition(self, submission_id: str, stage: PipelineStage,
                         error: Optional[str] = None,
                         metadata: Optional[Dict[str, Any]] = None,
                         errors: Optional[List[str]] = None,
                         warnings: Optional[List[str]] = None,
                         enforce: bool = True) -> PipelineStatus:
        """
        Append a history entry and move ``current_stage``.

        Raises:
            PipelineTransitionError: If ``enforce`` and the move is not in TRANSITIONS
        """
        submission = await self._get_submission(submission_id)
        status = submission.pipeline_status
        current = status.current_stage if status else None
        if enforce and stage not in TRANSITIONS[current]:
            raise PipelineTransitionError(current.value if current else None, stage.value)

        now = self.clock()
        history = list(status.stage_history) if status else []
        previous = history[-1] if history else None
        history.append(StageEntry(
            stage=stage,
            timestamp=now,
            duration_since_previous=(now - previous.timestamp).total_seconds() if previous else None,
            error=error,
            metadata=metadata,
        ))

        new_errors = list(status.errors) if status else []
        new_errors.extend(errors or [])
        if error:
            new_errors.append(error)
        new_warnings = (list(status.warnings) if status else []) + list(warnings or [])

        new_status = PipelineStatus(
            current_stage=stage,
            stage_history=history,
            errors=new_errors,
            warnings=new_warnings,
        )
        await self.submissions.patch(submission_id, {'pipeline_status': new_status})
        LOG.debug(f"{submission_id}: {current.value if current else '-'} -> {stage.value}")
        return new_status

    async def initialize(self, submission_id: str) -> PipelineStatus:
        """Enter ``received``. An existing history is kept and extended."""
        return await self.transition(submission_id, S.RECEIVED)

    async def validate(self, submission_id: str, config: GradingConfig,
                       extra_rules: Optional[List[ValidationRule]] = None) -> ValidationReport:
        """Run validation and record either ``validated`` or ``failed``."""
        submission = await self._get_submission(submission_id)
        report = validate_submission(submission, config, extra_rules)
        metadata = {'errors_found': len(report.errors), 'warnings_found': len(report.warnings)}

        if report.can_proceed_to_grading:
            await self.transition(submission_id, S.VALIDATED, metadata=metadata, warnings=report.warnings)
        else:
            LOG.info(f"{submission_id} failed validation: {report.errors}")
            await self.transition(submission_id, S.FAILED, error="Validation failed", metadata=metadata,
                                  errors=report.errors, warnings=report.warnings)
        return report

    # ------------------------------------------------------------------
    # Grading
    # ------------------------------------------------------------------

    def _routes_to_ai(self, question: Question, config: GradingConfig, options: PipelineOptions) -> bool:
        if not (options.use_ai and config.ai_grading_enabled and config.ai_config):
            return False
        if question.question_type not in config.ai_config.question_types:
            return False
        if self.ai_adapter is None:
            LOG.warning(f"AI grading configured for {question.question_id} but no adapter; using rules")
            return False
        return True

    async def _grade_with_ai(self, question: Question, response: Response,
                             ai_config: AIGradingConfig, summary: GradingSummary) -> GradingResult:
        request = AIGradingRequest(
            question_text=question.title,
            student_response=response.joined("\n"),
            correct_answer=question.correct_answer,
            rubric=ai_config.rubric,
            points_possible=question.points,
            provider=ai_config.provider,
            model=ai_config.model,
            temperature=ai_config.temperature,
            max_tokens=ai_config.max_tokens,
            grading_prompt=ai_config.grading_prompt,
        )
        reply = await self.ai_adapter.grade(request)
        summary.tokens_used += reply.tokens_used
        summary.cost += reply.cost

        earned = min(reply.score, question.points)
        flagged = reply.confidence < ai_config.confidence_threshold or ai_config.require_human_review
        return GradingResult(
            question_id=question.question_id,
            algorithm="ai",
            points_earned=earned,
            points_possible=question.points,
            is_correct=question.points > 0 and earned / question.points >= AI_CORRECT_THRESHOLD,
            feedback=reply.feedback,
            confidence=reply.confidence,
            flagged_for_review=flagged,
            criteria_scores=reply.criteria_scores,
        )

    @staticmethod
    def _ai_failure_result(question: Question, error: ExternalServiceError) -> GradingResult:
        return GradingResult(
            question_id=question.question_id,
            algorithm="ai",
            points_earned=0,
            points_possible=question.points,
            is_correct=False,
            feedback=f"AI grading failed: {error}",
            confidence=0.0,
            flagged_for_review=True,
        )

    async def grade(self, submission_id: str, config: GradingConfig,
                    options: Optional[PipelineOptions] = None) -> GradingSummary:
        """
        Score every response and persist results in a single patch.

        If the AI service fails for a question, a zero-confidence result flagged
        for review is stored for it, the remaining questions are still graded
        and persisted, and the first ExternalServiceError is re-raised.
        """
        options = options or PipelineOptions()
        submission = await self._get_submission(submission_id)
        ai_active = bool(options.use_ai and config.ai_grading_enabled and config.ai_config)
        if not config.auto_grading_enabled and not ai_active:
            raise GradingError(f"Auto-grading not enabled for assignment {config.assignment_id}")

        overrides = {r.question_id: r for r in options.grading_rules}
        summary = GradingSummary(total_score=0, total_possible=config.possible_points(),
                                 percentage=0, questions_graded=0)
        results: List[GradingResult] = []
        service_error: Optional[ExternalServiceError] = None

        for response in submission.responses:
            question = config.question(response.question_id)
            if question is not None and self._routes_to_ai(question, config, options):
                try:
                    result = await self._grade_with_ai(question, response, config.ai_config, summary)
                except ExternalServiceError as e:
                    LOG.warning(f"AI grading failed for {submission_id}/{question.question_id}: {e}")
                    service_error = service_error or e
                    result = self._ai_failure_result(question, e)
            else:
                result = grade_response(question, response, overrides.get(response.question_id))
            results.append(result)

        summary.total_score = sum(r.points_earned for r in results)
        summary.questions_graded = len(results)
        summary.flagged_for_review = sum(1 for r in results if r.flagged_for_review)
        if summary.total_possible > 0:
            summary.percentage = round(summary.total_score / summary.total_possible * 100, 2)

        await self.submissions.patch(submission_id, {
            'grading_results': results,
            'total_score': summary.total_score,
            'total_possible': summary.total_possible,
            'percentage': summary.percentage,
            'auto_graded': service_error is None,
        })
        LOG.debug(f"Graded {submission_id}: {summary.total_score}/{summary.total_possible}")

        if service_error is not None:
            raise service_error
        return summary

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    async def process_submission(self, submission_id: str,
                                 options: Optional[PipelineOptions] = None) -> PipelineOutcome:
        """
        Run the whole pipeline for one submission.

        Only a missing submission or missing grading configuration raises, and
        both are detected before the submission is modified. Every other
        failure is recorded as ``failed`` and returned in the outcome.
        """
        options = options or PipelineOptions()
        start = time.monotonic()
        submission = await self._get_submission(submission_id)
        config = await self.load_config(submission.assignment_id)

        try:
            await self.initialize(submission_id)
            return await self._validate_and_grade(submission_id, config, options, start)
        except ValidationError as e:
            return PipelineOutcome(submission_id=submission_id, success=False, stage=S.FAILED,
                                   message="Validation failed", errors=e.errors, warnings=e.warnings,
                                   processing_time=time.monotonic() - start)
        except Exception as e:
            return await self._fail(submission_id, e, start)

    async def retry_submission(self, submission_id: str,
                               options: Optional[PipelineOptions] = None) -> PipelineOutcome:
        """
        Re-validate and re-grade a submission whose pipeline ended in ``failed``.

        Raises:
            PipelineTransitionError: If the submission is not currently failed
        """
        options = options or PipelineOptions()
        start = time.monotonic()
        submission = await self._get_submission(submission_id)
        if submission.current_stage != S.FAILED:
            current = submission.current_stage.value if submission.current_stage else None
            raise PipelineTransitionError(current, S.GRADING.value)
        config = await self.load_config(submission.assignment_id)

        LOG.info(f"Retrying failed submission {submission_id}")
        try:
            return await self._validate_and_grade(submission_id, config, options, start)
        except ValidationError as e:
            return PipelineOutcome(submission_id=submission_id, success=False, stage=S.FAILED,
                                   message="Validation failed", errors=e.errors, warnings=e.warnings,
                                   processing_time=time.monotonic() - start)
        except Exception as e:
            return await self._fail(submission_id, e, start)

    async def _validate_and_grade(self, submission_id: str, config: GradingConfig,
                                  options: PipelineOptions, start: float) -> PipelineOutcome:
        warnings: List[str] = []
        if not options.skip_validation:
            report = await self.validate(submission_id, config, options.extra_rules)
            if not report.can_proceed_to_grading:
                raise ValidationError(report.errors, report.warnings)
            warnings = report.warnings

        await self.transition(submission_id, S.GRADING)
        summary = await self.grade(submission_id, config, options)
        await self.transition(submission_id, S.GRADED, metadata={
            'total_score': summary.total_score,
            'percentage': summary.percentage,
            'questions_graded': summary.questions_graded,
        })

        stage = S.GRADED
        if options.auto_publish:
            await self.transition(submission_id, S.PUBLISHED)
            stage = S.PUBLISHED

        elapsed = time.monotonic() - start
        return PipelineOutcome(
            submission_id=submission_id,
            success=True,
            stage=stage,
            message=f"Submission processed successfully in {elapsed * 1000:.0f}ms",
            warnings=warnings,
            grading=summary,
            processing_time=elapsed,
        )

    async def _fail(self, submission_id: str, error: Exception, start: float) -> PipelineOutcome:
        LOG.error(f"Pipeline failed for {submission_id}: {error}")
        await self.transition(submission_id, S.FAILED, error=str(error), enforce=False)
        return PipelineOutcome(
            submission_id=submission_id,
            success=False,
            stage=S.FAILED,
            message="Pipeline processing failed",
            error=str(error),
            processing_time=time.monotonic() - start,
        )
