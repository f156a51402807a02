"""Deterministic grading algorithms, one per question type.

Every ``grade_*`` function is pure: it takes the student's answer, the answer
key and a :class:`GradingParameters`, and returns a :class:`RuleOutcome` whose
``score`` is a fraction in ``[0, 1]``. Points are applied by
:func:`grade_response`, which also handles dispatch and missing questions.
"""

import logging
import re
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

from .errors import AlgorithmInputError, QuestionNotFoundError
from .models import GradingParameters, GradingResult, GradingRule, Question, QuestionType, Response

LOG = logging.getLogger(__name__)

# A number with an optional unit made of letters, % or a degree sign ("12", "-3.5 kg", ".5%").
NUMERIC_PATTERN = re.compile(r'^(-?\d*\.?\d+)\s*([a-zA-Z%°]*)?$')

VERBOSE_ESSAY_SCORE = 0.8
ESSAY_CORRECT_THRESHOLD = 0.8


@dataclass(frozen=True)
class RuleOutcome:
    score: float
    feedback: str
    is_correct: bool


def _param(params: GradingParameters, name: str, default):
    value = getattr(params, name)
    return default if value is None else value


def grade_multiple_choice(student_answer: str, correct_answer: str,
                          params: GradingParameters) -> RuleOutcome:
    """Exact match, case-folded unless ``case_sensitive``."""
    case_sensitive = _param(params, 'case_sensitive', False)
    student = student_answer if case_sensitive else student_answer.lower()
    correct = correct_answer if case_sensitive else correct_answer.lower()

    if student == correct:
        return RuleOutcome(1.0, "Correct!", True)
    return RuleOutcome(0.0, f"Incorrect. The correct answer is: {correct_answer}", False)


def grade_checkbox(student_answers: List[str], correct_answers: List[str],
                   params: GradingParameters) -> RuleOutcome:
    """
    Multiple-select grading.

    Both sides are compared as sets, so duplicate or case-variant keys count
    once. Partial credit is ``(correct - incorrect) / len(correct_set)``,
    floored at zero and capped at ``max_partial_percent``.
    """
    case_sensitive = _param(params, 'case_sensitive', False)
    partial_credit = _param(params, 'partial_credit', True)
    max_partial = _param(params, 'max_partial_percent', 0.5)

    def normalize(answers: List[str]) -> set:
        return set(answers if case_sensitive else (a.lower() for a in answers))

    student_set = normalize(student_answers)
    correct_set = normalize(correct_answers)

    correct_matches = len(student_set & correct_set)
    incorrect_selections = len(student_set - correct_set)
    total_correct = len(correct_set)
    missed = total_correct - correct_matches

    if correct_matches == total_correct and incorrect_selections == 0:
        return RuleOutcome(1.0, "Correct! All answers selected properly.", True)

    if partial_credit and correct_matches > 0:
        partial = max(0.0, (correct_matches - incorrect_selections) / total_correct)
        return RuleOutcome(
            min(partial, max_partial),
            f"Partial credit: {correct_matches} correct, {incorrect_selections} incorrect, {missed} missed.",
            False,
        )

    return RuleOutcome(
        0.0,
        f"Incorrect. You selected {correct_matches} correct answer(s) "
        f"but also {incorrect_selections} incorrect selection(s).",
        False,
    )


def levenshtein(a: str, b: str) -> int:
    """Minimum number of single-character inserts, deletes and substitutions turning a into b."""
    if len(a) < len(b):
        a, b = b, a
    previous = list(range(len(b) + 1))
    for i, ca in enumerate(a, start=1):
        current = [i]
        for j, cb in enumerate(b, start=1):
            current.append(min(
                previous[j] + 1,
                current[j - 1] + 1,
                previous[j - 1] + (ca != cb),
            ))
        previous = current
    return previous[-1]


def text_similarity(a: str, b: str) -> float:
    """Normalized edit-distance similarity in [0, 1]; two empty strings are identical."""
    max_len = max(len(a), len(b))
    if max_len == 0:
        return 1.0
    return 1.0 - levenshtein(a, b) / max_len


def grade_short_answer(student_answer: str, correct_answer: str,
                       params: GradingParameters) -> RuleOutcome:
    case_sensitive = _param(params, 'case_sensitive', False)
    exact_match = _param(params, 'exact_match', False)
    partial_credit = _param(params, 'partial_credit', True)
    max_partial = _param(params, 'max_partial_percent', 0.7)

    student = student_answer.strip() if case_sensitive else student_answer.lower().strip()
    correct = correct_answer.strip() if case_sensitive else correct_answer.lower().strip()

    if student == correct:
        return RuleOutcome(1.0, "Correct!", True)

    if exact_match:
        return RuleOutcome(0.0, f'Incorrect. Expected exact answer: "{correct_answer}"', False)

    if partial_credit:
        similarity = text_similarity(student, correct)
        if similarity > 0.8:
            return RuleOutcome(max_partial, "Close answer. Some minor differences detected.", False)
        if similarity > 0.5:
            return RuleOutcome(
                max_partial * 0.5, "Partially correct. The answer contains some correct elements.", False
            )

    return RuleOutcome(0.0, f'Incorrect. Expected: "{correct_answer}"', False)


def parse_numeric_answer(answer: str) -> Tuple[float, str]:
    """
    Split an answer like ``"9.8 m"`` into ``(9.8, "m")``.

    Raises:
        AlgorithmInputError: If the text is not a number with an optional unit
    """
    match = NUMERIC_PATTERN.match(answer.strip())
    if not match:
        raise AlgorithmInputError(f"Invalid numeric format: {answer!r}")
    return float(match.group(1)), (match.group(2) or "").lower()


def grade_numeric(student_answer: str, correct_answer: str,
                  params: GradingParameters) -> RuleOutcome:
    """Relative-tolerance comparison; the bound ``tolerance * |correct|`` is inclusive."""
    tolerance = _param(params, 'numeric_tolerance', 0.01)
    unit_required = _param(params, 'unit_required', False)

    try:
        student_value, student_unit = parse_numeric_answer(student_answer)
        correct_value, correct_unit = parse_numeric_answer(correct_answer)
    except AlgorithmInputError as e:
        LOG.debug(f"Numeric parse failed: {e}")
        return RuleOutcome(0.0, "Invalid numeric format. Please enter a valid number.", False)

    if unit_required and student_unit != correct_unit:
        return RuleOutcome(
            0.0, f"Incorrect unit. Expected: {correct_unit}, Got: {student_unit}", False
        )

    difference = abs(student_value - correct_value)
    allowed = abs(correct_value * tolerance)
    if difference <= allowed:
        return RuleOutcome(1.0, "Correct!", True)
    return RuleOutcome(0.0, f"Incorrect. Expected: {correct_answer}, Got: {student_answer}", False)


def grade_essay(student_answer: str, keyword_weights: Dict[str, float],
                params: GradingParameters) -> RuleOutcome:
    """
    Word-count gate followed by weighted keyword coverage.

    An answer over ``maximum_words`` always scores ``VERBOSE_ESSAY_SCORE`` and
    keywords are not checked, so it can outscore a shorter answer with weaker
    coverage.
    """
    min_words = _param(params, 'minimum_words', 50)
    max_words = _param(params, 'maximum_words', 1000)
    case_sensitive = _param(params, 'case_sensitive', False)

    text = student_answer if case_sensitive else student_answer.lower()
    word_count = len(text.split())

    if word_count < min_words:
        return RuleOutcome(
            0.0, f"Answer too short. Minimum {min_words} words required, got {word_count}.", False
        )

    if word_count > max_words:
        return RuleOutcome(
            VERBOSE_ESSAY_SCORE,
            f"Answer exceeds maximum length. Maximum {max_words} words allowed, got {word_count}.",
            False,
        )

    found, missing = [], []
    earned = possible = 0.0
    for keyword, weight in keyword_weights.items():
        possible += weight
        needle = keyword if case_sensitive else keyword.lower()
        if needle in text:
            earned += weight
            found.append(keyword)
        else:
            missing.append(keyword)

    score = earned / possible if possible > 0 else 0.0
    feedback = f"Found {len(found)}/{len(keyword_weights)} key concepts."
    if missing:
        feedback += f" Missing: {', '.join(missing)}."
    return RuleOutcome(score, feedback, score >= ESSAY_CORRECT_THRESHOLD)


def grade_unknown(_response: Response) -> RuleOutcome:
    # Policy: question types without an algorithm get full credit for any response.
    return RuleOutcome(1.0, "Response recorded", True)


def grade_response(question: Optional[Question], response: Response,
                   rule: Optional[GradingRule] = None) -> GradingResult:
    """
    Grade one response deterministically and convert the fraction to points.

    A ``None`` question means the response references a question absent from
    the configuration; it is scored zero rather than raising.
    """
    if question is None:
        error = QuestionNotFoundError(response.question_id)
        LOG.warning(str(error))
        return GradingResult(
            question_id=response.question_id,
            algorithm="none",
            points_earned=0,
            points_possible=0,
            is_correct=False,
            feedback="Question not found in grading configuration",
        )

    params = question.parameters.merged_with(rule.parameters if rule else None)
    qtype = rule.algorithm if rule and rule.algorithm else question.question_type

    if qtype == QuestionType.MULTIPLE_CHOICE:
        outcome = grade_multiple_choice(response.as_text(), question.correct_answer or "", params)
    elif qtype == QuestionType.CHECKBOX:
        outcome = grade_checkbox(response.as_list(), question.answer_list(), params)
    elif qtype == QuestionType.SHORT_ANSWER:
        outcome = grade_short_answer(response.as_text(), question.correct_answer or "", params)
    elif qtype == QuestionType.NUMERIC:
        outcome = grade_numeric(response.as_text(), question.correct_answer or "", params)
    elif qtype in (QuestionType.PARAGRAPH, QuestionType.ESSAY):
        outcome = grade_essay(response.joined(" "), params.keyword_weights or {}, params)
    else:
        outcome = grade_unknown(response)

    score = min(max(outcome.score, 0.0), 1.0)
    return GradingResult(
        question_id=response.question_id,
        algorithm=qtype,
        points_earned=score * question.points,
        points_possible=question.points,
        is_correct=outcome.is_correct,
        feedback=outcome.feedback,
    )


ALGORITHM_CATALOG = [
    {
        'type': QuestionType.MULTIPLE_CHOICE.value,
        'name': "Multiple Choice Grading",
        'description': "Exact match grading for single-select questions",
        'parameters': {'case_sensitive': False},
    },
    {
        'type': QuestionType.CHECKBOX.value,
        'name': "Multiple Select Grading",
        'description': "Grading for multiple selection questions with partial credit",
        'parameters': {'partial_credit': True, 'max_partial_percent': 0.5, 'case_sensitive': False},
    },
    {
        'type': QuestionType.SHORT_ANSWER.value,
        'name': "Short Answer Grading",
        'description': "Text-based grading with similarity matching",
        'parameters': {'exact_match': False, 'partial_credit': True,
                       'max_partial_percent': 0.7, 'case_sensitive': False},
    },
    {
        'type': QuestionType.NUMERIC.value,
        'name': "Numeric Answer Grading",
        'description': "Grading for numeric answers with relative tolerance",
        'parameters': {'numeric_tolerance': 0.01, 'unit_required': False},
    },
    {
        'type': QuestionType.ESSAY.value,
        'name': "Essay/Keyword Grading",
        'description': "Keyword-based grading for long-form answers",
        'parameters': {'keyword_weights': {}, 'minimum_words': 50,
                       'maximum_words': 1000, 'case_sensitive': False},
    },
]
