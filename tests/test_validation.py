"""Tests for pre-grading submission validation."""

from datetime import datetime, timedelta, timezone

import pytest

from autograde.grading.models import GradingConfig, Question, Response, Submission
from autograde.grading.validation import ValidationRule, validate_submission


@pytest.fixture
def config():
    return GradingConfig(
        assignment_id="hw1",
        questions=[
            Question(question_id="q1", question_type="MULTIPLE_CHOICE", points=1, correct_answer="A"),
            Question(question_id="q2", question_type="SHORT_ANSWER", points=1, correct_answer="x"),
            Question(question_id="q3", question_type="FILE_UPLOAD", points=1, required=False),
        ],
        due_date=datetime(2024, 3, 1, 12, 0),
    )


def make_submission(responses, submitted=datetime(2024, 3, 1, 9, 0)):
    return Submission(id="s1", assignment_id="hw1", student_id="alice",
                      submission_time=submitted, responses=responses)


def test_valid_submission(config):
    submission = make_submission([
        Response(question_id="q1", question_type="MULTIPLE_CHOICE", raw_answer="A"),
        Response(question_id="q2", question_type="SHORT_ANSWER", raw_answer="x"),
    ])
    report = validate_submission(submission, config)
    assert report.errors == []
    assert report.warnings == []
    assert report.can_proceed_to_grading


def test_missing_required_response(config):
    submission = make_submission([
        Response(question_id="q1", question_type="MULTIPLE_CHOICE", raw_answer="A"),
    ])
    report = validate_submission(submission, config)
    assert report.errors == ["response_count: Submission must have responses for all required questions"]
    assert not report.can_proceed_to_grading


def test_empty_response(config):
    submission = make_submission([
        Response(question_id="q1", question_type="MULTIPLE_CHOICE", raw_answer="A"),
        Response(question_id="q2", question_type="SHORT_ANSWER", raw_answer="   "),
    ])
    report = validate_submission(submission, config)
    assert report.errors == ["response_not_empty: All responses must have content"]


def test_empty_list_response(config):
    submission = make_submission([
        Response(question_id="q1", question_type="MULTIPLE_CHOICE", raw_answer=[]),
        Response(question_id="q2", question_type="SHORT_ANSWER", raw_answer="x"),
    ])
    assert not validate_submission(submission, config).can_proceed_to_grading


def test_late_submission_is_warning(config):
    submission = make_submission([
        Response(question_id="q1", question_type="MULTIPLE_CHOICE", raw_answer="A"),
        Response(question_id="q2", question_type="SHORT_ANSWER", raw_answer="x"),
    ], submitted=datetime(2024, 3, 2))
    report = validate_submission(submission, config)
    assert report.can_proceed_to_grading
    assert report.warnings == ["submission_timing: Submission received after deadline"]


def test_mixed_timezones_compare(config):
    aware = datetime(2024, 3, 1, 11, 0, tzinfo=timezone.utc)
    submission = make_submission([
        Response(question_id="q1", question_type="MULTIPLE_CHOICE", raw_answer="A"),
        Response(question_id="q2", question_type="SHORT_ANSWER", raw_answer="x"),
    ], submitted=aware)
    assert validate_submission(submission, config).warnings == []


def test_missing_attachment_is_warning(config):
    submission = make_submission([
        Response(question_id="q1", question_type="MULTIPLE_CHOICE", raw_answer="A"),
        Response(question_id="q2", question_type="SHORT_ANSWER", raw_answer="x"),
        Response(question_id="q3", question_type="FILE_UPLOAD", raw_answer="report.pdf"),
    ])
    report = validate_submission(submission, config)
    assert report.warnings == ["file_attachments: Some responses may have missing file attachments"]


def test_extra_rule_and_raising_rule_fail_closed(config):
    def boom(submission, cfg):
        raise RuntimeError("store offline")

    extra = [
        ValidationRule("student_known", "warning", "Unknown student",
                       lambda s, c: s.student_id in {"bob"}),
        ValidationRule("broken", "warning", "never shown", boom),
    ]
    submission = make_submission([
        Response(question_id="q1", question_type="MULTIPLE_CHOICE", raw_answer="A"),
        Response(question_id="q2", question_type="SHORT_ANSWER", raw_answer="x"),
    ], submitted=datetime(2024, 3, 1) - timedelta(days=1))
    report = validate_submission(submission, config, extra)
    assert report.warnings == ["student_known: Unknown student"]
    assert report.errors == ["Validation rule broken failed: store offline"]
    assert report.to_dict()['can_proceed_to_grading'] is False
