"""AI grading adapter: the contract the pipeline consumes, plus a pydantic-ai implementation."""

import asyncio
import json
import logging
import random
import re
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple

from autograde.libs.config_loader import ConfigType, get_config
from autograde.libs.llm import create_agent
from .errors import ExternalServiceError
from .models import AIGradingRequest, AIGradingResponse, CriterionScore

LOG = logging.getLogger(__name__)


class AIGradingAdapter:
    """Extension point for probabilistic, confidence-scored grading services."""

    async def grade(self, request: AIGradingRequest) -> AIGradingResponse:
        """
        Score one response.

        Raises:
            ExternalServiceError: If the service fails, times out or returns garbage
        """
        raise NotImplementedError


@dataclass
class RetryConfig:
    """Configuration for retry behavior on transient AI service failures."""
    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 10.0
    exponential_backoff: bool = True
    jitter_percent: float = 15

    @classmethod
    def from_configs(cls, configs: ConfigType) -> "RetryConfig":
        return cls(
            max_attempts=get_config("grading.ai.retry.max_attempts", configs, default=3),
            base_delay=get_config("grading.ai.retry.base_delay_seconds", configs, default=1.0),
            max_delay=get_config("grading.ai.retry.max_delay_seconds", configs, default=10.0),
            exponential_backoff=get_config("grading.ai.retry.exponential_backoff", configs, default=True),
            jitter_percent=get_config("grading.ai.retry.jitter_percent", configs, default=15),
        )


def calculate_retry_delay(attempt: int, cfg: RetryConfig) -> float:
    """Seconds to wait before retry number ``attempt`` (1-based)."""
    delay = cfg.base_delay
    if cfg.exponential_backoff:
        delay = cfg.base_delay * (2 ** (attempt - 1))
    delay = min(delay, cfg.max_delay)

    if cfg.jitter_percent > 0 and delay > 0:
        jitter_range = delay * (cfg.jitter_percent / 100)
        delay = max(0.1, delay + random.uniform(-jitter_range, jitter_range))
    return delay


def classify_ai_error(error: Exception) -> Tuple[bool, Optional[int]]:
    """Return ``(retryable, http_status)`` for an exception raised by the AI service."""
    status = getattr(error, 'status_code', None)
    message = str(error).lower()

    if status == 429 or "rate limit" in message:
        return True, status or 429
    if status in (401, 403) or "api key" in message:
        return False, status
    if status == 408 or "timeout" in message or "timed out" in message:
        return True, status
    if status is not None and status >= 500:
        return True, status
    if "connection" in message or "overloaded" in message:
        return True, status
    return False, status


def create_ai_grading_agent(configs: ConfigType,
                            model: Optional[str] = None,
                            settings_dict: Optional[Dict[str, Any]] = None) -> Any:
    """
    Create a pydantic-ai Agent configured for rubric grading.

    This is a wrapper around the general create_agent function with a grading-specific prompt.
    """
    system_prompt = (
        "You are a fair and careful grading assistant. Score student responses strictly "
        "against the provided rubric and expected answer. Award partial credit where "
        "appropriate, keep feedback brief and constructive, and report how confident "
        "you are in the score as a number between 0 and 1."
    )
    return create_agent(
        configs=configs,
        model=model,
        settings_dict=settings_dict,
        system_prompt=system_prompt
    )


def build_prompt(request: AIGradingRequest) -> str:
    """Fill the request's prompt template. Placeholders use ``{name}`` and are replaced literally."""
    return (request.grading_prompt
            .replace("{rubric}", request.rubric.model_dump_json(indent=2))
            .replace("{studentResponse}", request.student_response)
            .replace("{expectedAnswer}", request.correct_answer or "")
            .replace("{question}", request.question_text)
            .replace("{maxPoints}", f"{request.points_possible:g}"))


def parse_grading_reply(text: str, points_possible: float) -> AIGradingResponse:
    """
    Extract the JSON object from a model reply.

    Raises:
        ExternalServiceError: If no parseable JSON object is present
    """
    json_match = re.search(r'{.*}', text, re.DOTALL)
    if not json_match:
        raise ExternalServiceError("AI grading response contained no JSON object")
    try:
        data = json.loads(json_match.group())
    except json.JSONDecodeError as e:
        raise ExternalServiceError(f"Could not parse AI grading response: {e}") from e

    criteria = [
        CriterionScore(
            criterion=str(c.get('criterion', '')),
            score=float(c.get('score', 0)),
            max_points=float(c.get('maxPoints', c.get('max_points', 0))),
            level=str(c.get('level', '')),
            reasoning=str(c.get('reasoning', '')),
        )
        for c in data.get('criteriaScores', data.get('criteria_scores', [])) or []
        if isinstance(c, dict)
    ]
    score = min(max(float(data.get('score', 0)), 0.0), points_possible)
    confidence = min(max(float(data.get('confidence', 0)), 0.0), 1.0)
    return AIGradingResponse(
        score=score,
        confidence=confidence,
        feedback=str(data.get('feedback', '')),
        criteria_scores=criteria,
    )


class PydanticAIGradingAdapter(AIGradingAdapter):
    """Grade responses with an OpenAI model through pydantic-ai."""

    def __init__(self, configs: ConfigType, retry_config: Optional[RetryConfig] = None):
        self.configs = configs
        self.retry_config = retry_config or RetryConfig.from_configs(configs)
        self.cost_per_1k_tokens = get_config("grading.ai.cost_per_1k_tokens", configs, default=0.0)

    async def grade(self, request: AIGradingRequest) -> AIGradingResponse:
        if request.provider != "openai":
            raise ExternalServiceError(
                f"Unsupported AI provider: {request.provider}", retryable=False, provider=request.provider
            )

        prompt = build_prompt(request)
        cfg = self.retry_config
        last_error: Optional[ExternalServiceError] = None

        for attempt in range(1, cfg.max_attempts + 1):
            start = time.monotonic()
            try:
                return await self._grade_once(request, prompt, start)
            except ExternalServiceError as e:
                last_error = e
            except Exception as e:
                retryable, status = classify_ai_error(e)
                last_error = ExternalServiceError(
                    f"AI grading failed: {e}", retryable=retryable,
                    status_code=status, provider=request.provider
                )

            if not last_error.retryable or attempt == cfg.max_attempts:
                break
            delay = calculate_retry_delay(attempt, cfg)
            LOG.warning(f"AI grading attempt {attempt} failed ({last_error}); retrying in {delay:.1f}s")
            await asyncio.sleep(delay)

        raise last_error

    async def _grade_once(self, request: AIGradingRequest, prompt: str, start: float) -> AIGradingResponse:
        agent = create_ai_grading_agent(
            configs=self.configs,
            model=request.model,
            settings_dict={'temperature': request.temperature, 'max_tokens': request.max_tokens},
        )
        result = await agent.run(prompt)

        if hasattr(result, 'output'):
            response_text = str(result.output)
        elif hasattr(result, 'data'):
            response_text = str(result.data)
        else:
            response_text = str(result)

        parsed = parse_grading_reply(response_text, request.points_possible)

        tokens = 0
        if hasattr(result, 'usage'):
            usage = result.usage()
            tokens = int(getattr(usage, 'total_tokens', 0) or 0)

        return parsed.model_copy(update={
            'processing_time': time.monotonic() - start,
            'tokens_used': tokens,
            'cost': tokens / 1000 * self.cost_per_1k_tokens,
        })
