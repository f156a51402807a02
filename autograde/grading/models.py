"""Pydantic models for grading configuration, submissions, pipeline state and batch jobs."""

from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, model_validator


class QuestionType(str, Enum):
    """Question types known to the rule evaluator. Unknown strings are still accepted."""
    MULTIPLE_CHOICE = "MULTIPLE_CHOICE"
    CHECKBOX = "CHECKBOX"
    SHORT_ANSWER = "SHORT_ANSWER"
    NUMERIC = "NUMERIC"
    PARAGRAPH = "PARAGRAPH"
    ESSAY = "ESSAY"
    SCALE = "SCALE"
    GRID = "GRID"
    DATE = "DATE"
    TIME = "TIME"
    FILE_UPLOAD = "FILE_UPLOAD"


class PipelineStage(str, Enum):
    RECEIVED = "received"
    VALIDATED = "validated"
    GRADING = "grading"
    GRADED = "graded"
    # Reserved for a manual review step; no transition assigns it yet.
    REVIEWED = "reviewed"
    PUBLISHED = "published"
    FAILED = "failed"


class JobStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_JOB_STATUSES = (JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED)


class ItemStatus(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"


# ---------------------------------------------------------------------------
# Grading configuration
# ---------------------------------------------------------------------------

class GradingParameters(BaseModel):
    """Algorithm knobs. Unset values fall back to per-algorithm defaults."""
    case_sensitive: Optional[bool] = Field(default=None, description="Compare answers case-sensitively")
    exact_match: Optional[bool] = Field(default=None, description="Short answer: disable similarity credit")
    partial_credit: Optional[bool] = Field(default=None, description="Allow partial credit")
    max_partial_percent: Optional[float] = Field(
        default=None, ge=0, le=1, description="Upper bound on partial credit as a fraction of full credit"
    )
    numeric_tolerance: Optional[float] = Field(
        default=None, ge=0, description="Relative tolerance for numeric answers (0.01 = 1%)"
    )
    unit_required: Optional[bool] = Field(default=None, description="Numeric: units must match")
    keyword_weights: Optional[Dict[str, float]] = Field(default=None, description="Essay keywords and weights")
    minimum_words: Optional[int] = Field(default=None, ge=0, description="Essay minimum word count")
    maximum_words: Optional[int] = Field(default=None, ge=0, description="Essay maximum word count")

    def merged_with(self, override: Optional["GradingParameters"]) -> "GradingParameters":
        """Return a copy where every field set on ``override`` replaces ours."""
        if override is None:
            return self.model_copy()
        return self.model_copy(update=override.model_dump(exclude_unset=True, exclude_none=True))


class Question(BaseModel):
    """One gradable question with its answer key."""
    question_id: str
    title: str = ""
    question_type: str = Field(description="One of QuestionType or any custom type string")
    points: float = Field(ge=0, description="Points possible for this question")
    required: bool = True
    correct_answer: Optional[str] = None
    correct_answers: Optional[List[str]] = None
    parameters: GradingParameters = Field(default_factory=GradingParameters)

    def answer_list(self) -> List[str]:
        """Correct answers as a list; a comma-separated ``correct_answer`` is split."""
        if self.correct_answers:
            return list(self.correct_answers)
        if self.correct_answer:
            return [a.strip() for a in self.correct_answer.split(',') if a.strip()]
        return []


class GradingRule(BaseModel):
    """Per-run parameter override for a single question."""
    question_id: str
    algorithm: Optional[str] = None
    parameters: GradingParameters = Field(default_factory=GradingParameters)


class RubricLevel(BaseModel):
    level: str
    description: str = ""
    points: float


class RubricCriterion(BaseModel):
    """Single rubric criterion used by AI grading."""
    name: str = Field(description="Name of the grading criterion")
    description: str = Field(default="", description="Description of what's being evaluated")
    points: float = Field(description="Maximum points for this criterion")
    levels: List[RubricLevel] = Field(default_factory=list)


class Rubric(BaseModel):
    criteria: List[RubricCriterion] = Field(default_factory=list)


DEFAULT_AI_PROMPT = """You are an expert teacher grading a student response. Evaluate it against the rubric.

Question: {question}
Rubric:
{rubric}
Expected Answer (if provided): {expectedAnswer}
Points Possible: {maxPoints}

Student Response:
{studentResponse}

Return ONLY a JSON object with this structure:
{
  "score": <points earned>,
  "confidence": <0 to 1>,
  "feedback": "<constructive feedback>",
  "criteriaScores": [
    {"criterion": "<name>", "score": <points>, "maxPoints": <points>, "level": "<level>", "reasoning": "<brief>"}
  ]
}"""


class AIGradingConfig(BaseModel):
    """Assignment-level settings for the AI grading adapter."""
    provider: Literal["openai", "anthropic", "local"] = "openai"
    model: str = "gpt-4o-mini"
    temperature: float = Field(default=0.0, ge=0, le=2)
    max_tokens: int = Field(default=1000, gt=0)
    rubric: Rubric = Field(default_factory=Rubric)
    grading_prompt: str = DEFAULT_AI_PROMPT
    confidence_threshold: float = Field(default=0.7, ge=0, le=1)
    require_human_review: bool = False
    question_types: List[str] = Field(
        default_factory=lambda: [QuestionType.PARAGRAPH.value, QuestionType.ESSAY.value],
        description="Question types routed to the AI adapter instead of the rule evaluator"
    )


class GradingConfig(BaseModel):
    """Per-assignment grading configuration, read-only during grading."""
    assignment_id: str
    questions: List[Question] = Field(default_factory=list)
    total_points: float = Field(default=0, ge=0)
    auto_grading_enabled: bool = True
    due_date: Optional[datetime] = None
    ai_grading_enabled: bool = False
    ai_config: Optional[AIGradingConfig] = None

    def question(self, question_id: str) -> Optional[Question]:
        for q in self.questions:
            if q.question_id == question_id:
                return q
        return None

    def possible_points(self) -> float:
        return self.total_points or sum(q.points for q in self.questions)


# ---------------------------------------------------------------------------
# Submissions and results
# ---------------------------------------------------------------------------

class Response(BaseModel):
    """A student's answer to one question. Immutable once submitted."""
    model_config = ConfigDict(frozen=True)

    question_id: str
    question_type: str
    raw_answer: Union[str, List[str]] = ""
    file_upload_answers: Optional[List[str]] = None

    def as_text(self) -> str:
        """Single-answer view; lists contribute their first element."""
        if isinstance(self.raw_answer, list):
            return self.raw_answer[0] if self.raw_answer else ""
        return self.raw_answer

    def as_list(self) -> List[str]:
        if isinstance(self.raw_answer, list):
            return list(self.raw_answer)
        return [self.raw_answer]

    def joined(self, sep: str = "") -> str:
        if isinstance(self.raw_answer, list):
            return sep.join(self.raw_answer)
        return self.raw_answer


class CriterionScore(BaseModel):
    criterion: str
    score: float
    max_points: float
    level: str = ""
    reasoning: str = ""


class GradingResult(BaseModel):
    """Scored outcome for a single question."""
    question_id: str
    algorithm: str = Field(description="Question type or 'ai' / 'none' that produced the score")
    points_earned: float = Field(ge=0)
    points_possible: float = Field(ge=0)
    is_correct: bool
    feedback: str = ""
    confidence: Optional[float] = Field(default=None, ge=0, le=1)
    flagged_for_review: bool = False
    criteria_scores: List[CriterionScore] = Field(default_factory=list)

    @model_validator(mode="after")
    def _earned_within_possible(self) -> "GradingResult":
        if self.points_earned > self.points_possible + 1e-9:
            raise ValueError(
                f"points_earned {self.points_earned} exceeds points_possible {self.points_possible}"
            )
        return self


class StageEntry(BaseModel):
    stage: PipelineStage
    timestamp: datetime
    duration_since_previous: Optional[float] = Field(default=None, description="Seconds since prior entry")
    error: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None


class PipelineStatus(BaseModel):
    """Append-only stage history; ``current_stage`` is the only mutable pointer."""
    current_stage: PipelineStage
    stage_history: List[StageEntry] = Field(default_factory=list)
    errors: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)


class Submission(BaseModel):
    id: str
    assignment_id: str
    student_id: str
    submission_time: datetime = Field(default_factory=datetime.now)
    responses: List[Response] = Field(default_factory=list)
    grading_results: List[GradingResult] = Field(default_factory=list)
    total_score: float = 0
    total_possible: float = 0
    percentage: float = 0
    auto_graded: bool = False
    pipeline_status: Optional[PipelineStatus] = None

    @property
    def current_stage(self) -> Optional[PipelineStage]:
        return self.pipeline_status.current_stage if self.pipeline_status else None


# ---------------------------------------------------------------------------
# AI adapter contract
# ---------------------------------------------------------------------------

class AIGradingRequest(BaseModel):
    question_text: str
    student_response: str
    correct_answer: Optional[str] = None
    rubric: Rubric = Field(default_factory=Rubric)
    points_possible: float = Field(ge=0)
    provider: str = "openai"
    model: str = "gpt-4o-mini"
    temperature: float = 0.0
    max_tokens: int = 1000
    grading_prompt: str = DEFAULT_AI_PROMPT


class AIGradingResponse(BaseModel):
    score: float = Field(ge=0, description="Points earned, never above points_possible")
    confidence: float = Field(ge=0, le=1)
    feedback: str = ""
    criteria_scores: List[CriterionScore] = Field(default_factory=list)
    processing_time: float = 0
    tokens_used: int = 0
    cost: float = 0


# ---------------------------------------------------------------------------
# Batch jobs
# ---------------------------------------------------------------------------

class BatchSettings(BaseModel):
    batch_size: int = Field(default=10, ge=1)
    max_concurrency: int = Field(default=3, ge=1)
    skip_already_graded: bool = True
    auto_publish: bool = False
    use_ai: bool = True
    grading_rules: List[GradingRule] = Field(default_factory=list)


class BatchProgress(BaseModel):
    total: int = Field(default=0, ge=0)
    processed: int = Field(default=0, ge=0)
    successful: int = Field(default=0, ge=0)
    failed: int = Field(default=0, ge=0)
    skipped: int = Field(default=0, ge=0)

    @model_validator(mode="after")
    def _counters_consistent(self) -> "BatchProgress":
        if self.successful + self.failed + self.skipped != self.processed:
            raise ValueError("successful + failed + skipped must equal processed")
        if self.processed > self.total:
            raise ValueError("processed cannot exceed total")
        return self


class BatchItemResult(BaseModel):
    submission_id: str
    status: ItemStatus
    message: str = ""
    score: Optional[float] = None
    processing_time: Optional[float] = None
    tokens_used: int = 0
    cost: float = 0


class JobTimestamps(BaseModel):
    created: datetime = Field(default_factory=datetime.now)
    started: Optional[datetime] = None
    completed: Optional[datetime] = None


class _JobBase(BaseModel):
    id: str
    assignment_id: str
    submission_ids: List[str] = Field(default_factory=list)
    status: JobStatus = JobStatus.PENDING
    settings: BatchSettings = Field(default_factory=BatchSettings)
    progress: BatchProgress = Field(default_factory=BatchProgress)
    results: List[BatchItemResult] = Field(default_factory=list)
    timestamps: JobTimestamps = Field(default_factory=JobTimestamps)
    errors: List[str] = Field(default_factory=list)
    total_tokens: int = 0
    total_cost: float = 0

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_JOB_STATUSES


class BatchJob(_JobBase):
    """Bulk grading of an assignment's submissions."""
    kind: Literal["batch"] = "batch"


class RetryJob(_JobBase):
    """Re-run of submissions whose pipeline ended in ``failed``."""
    kind: Literal["retry"] = "retry"
    selected_from: Literal["explicit", "assignment"] = "assignment"


GradingJob = Annotated[Union[BatchJob, RetryJob], Field(discriminator="kind")]

GRADING_JOB_ADAPTER = TypeAdapter(GradingJob)
