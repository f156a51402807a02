"""Tests for the in-memory store implementations."""

import pytest

from autograde.grading.errors import NotFoundError
from autograde.grading.models import BatchJob, GRADING_JOB_ADAPTER, RetryJob, Submission
from autograde.grading.stores import InMemoryJobStore, InMemorySubmissionStore


@pytest.mark.asyncio
async def test_reads_are_copies():
    store = InMemorySubmissionStore([Submission(id="s1", assignment_id="a", student_id="x")])
    first = await store.get("s1")
    first.total_score = 99
    assert (await store.get("s1")).total_score == 0


@pytest.mark.asyncio
async def test_patch_missing_raises():
    store = InMemorySubmissionStore()
    with pytest.raises(NotFoundError):
        await store.patch("ghost", {'total_score': 1})


@pytest.mark.asyncio
async def test_upsert_keyed_by_assignment_and_student():
    store = InMemorySubmissionStore([Submission(id="s1", assignment_id="a", student_id="x")])
    replaced = await store.upsert(Submission(id="new", assignment_id="a", student_id="x", total_score=3))
    assert replaced.id == "s1"
    assert len(await store.query_by_assignment("a")) == 1
    assert (await store.query_by_assignment_and_student("a", "x")).total_score == 3

    await store.upsert(Submission(id="s2", assignment_id="a", student_id="y"))
    assert {s.id for s in await store.query_by_assignment("a")} == {"s1", "s2"}


@pytest.mark.asyncio
async def test_job_store_round_trips_union():
    store = InMemoryJobStore()
    await store.create(BatchJob(id="j1", assignment_id="a"))
    await store.create(RetryJob(id="j2", assignment_id="a", selected_from="explicit"))

    jobs = await store.list_by_assignment("a")
    assert {type(j) for j in jobs} == {BatchJob, RetryJob}

    with pytest.raises(ValueError):
        await store.create(BatchJob(id="j1", assignment_id="a"))


def test_job_union_discriminates_on_kind():
    job = GRADING_JOB_ADAPTER.validate_python({'kind': 'retry', 'id': 'r', 'assignment_id': 'a'})
    assert isinstance(job, RetryJob)
    assert job.selected_from == "assignment"
