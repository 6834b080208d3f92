"""Tests for the scheduler and the job state machine.

Validates:
- schedule() validation: past due_at, grace window, platforms, score range
- schedule() writes a pending record that survives a reload
- cancel() only from pending; second cancel raises InvalidStateError
- cancel() losing a race against a claim raises InvalidStateError
- ensure_transition() enforces the transition table
- is_eligible() for pending and lease-expired jobs
"""

from datetime import datetime, timedelta, timezone

import pytest

from postflow.exceptions import (
    InvalidScheduleError,
    InvalidStateError,
    JobNotFoundError,
    UnsupportedPlatformError,
)
from postflow.logging import LifecycleLogger
from postflow.models import JobRecord, JobState, Platform
from postflow.scheduling.lifecycle import ensure_transition
from postflow.scheduling.scheduler import JobScheduler, is_eligible, resolve_platform


@pytest.fixture
def scheduler(store, clock):
    return JobScheduler(store, grace_seconds=30, clock=clock)


# =============================================================================
# schedule()
# =============================================================================


class TestSchedule:
    @pytest.mark.asyncio
    async def test_schedule_writes_pending_record(self, scheduler, store, clock):
        job_id = await scheduler.schedule("draft-1", "microblog", clock.now + timedelta(seconds=1), 70)

        row = await store.get_job(job_id)
        job = JobRecord.from_row(row)
        assert job.state == JobState.PENDING
        assert job.platform == Platform.MICROBLOG
        assert job.predicted_score == 70
        assert job.attempt_count == 0
        assert job.claim_token is None
        assert job.last_error is None
        assert job.platform_post_id is None

    @pytest.mark.asyncio
    async def test_platform_aliases_are_normalized(self, scheduler, clock):
        job_id = await scheduler.schedule("draft-1", "Twitter", clock.now, 50)
        job = await scheduler.get_job(job_id)
        assert job.platform == Platform.MICROBLOG

    @pytest.mark.asyncio
    async def test_unknown_platform_raises(self, scheduler, clock):
        with pytest.raises(UnsupportedPlatformError):
            await scheduler.schedule("draft-1", "myspace", clock.now, 50)

    @pytest.mark.asyncio
    async def test_past_due_beyond_grace_raises(self, scheduler, clock):
        with pytest.raises(InvalidScheduleError):
            await scheduler.schedule("draft-1", "linkedin", clock.now - timedelta(minutes=5), 50)

    @pytest.mark.asyncio
    async def test_past_due_within_grace_is_accepted(self, scheduler, clock):
        job_id = await scheduler.schedule(
            "draft-1", "linkedin", clock.now - timedelta(seconds=10), 50
        )
        assert (await scheduler.get_job(job_id)).state == JobState.PENDING

    @pytest.mark.asyncio
    async def test_naive_due_at_is_treated_as_utc(self, scheduler, clock):
        naive = (clock.now + timedelta(hours=1)).replace(tzinfo=None)
        job_id = await scheduler.schedule("draft-1", "linkedin", naive, 50)
        job = await scheduler.get_job(job_id)
        assert job.due_at == clock.now + timedelta(hours=1)
        assert job.due_at.tzinfo is not None

    @pytest.mark.asyncio
    @pytest.mark.parametrize("score", [-1, 100.5, "high"])
    async def test_score_out_of_range_raises(self, scheduler, clock, score):
        with pytest.raises(InvalidScheduleError):
            await scheduler.schedule("draft-1", "linkedin", clock.now, score)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("ref", ["", "   "])
    async def test_blank_content_ref_raises(self, scheduler, clock, ref):
        with pytest.raises(InvalidScheduleError):
            await scheduler.schedule(ref, "linkedin", clock.now, 50)

    @pytest.mark.asyncio
    async def test_lifecycle_entry_is_recorded(self, store, clock, tmp_path):
        lifecycle = LifecycleLogger(log_dir=str(tmp_path))
        scheduler = JobScheduler(store, clock=clock, lifecycle=lifecycle)

        job_id = await scheduler.schedule("draft-1", "linkedin", clock.now, 50)

        entries = lifecycle.get_recent(job_id=job_id)
        assert [e.event for e in entries] == ["scheduled"]
        assert (tmp_path / "lifecycle.log").exists()


# =============================================================================
# cancel()
# =============================================================================


class TestCancel:
    @pytest.mark.asyncio
    async def test_cancel_pending_job(self, scheduler, clock):
        job_id = await scheduler.schedule("draft-c", "linkedin", clock.now + timedelta(hours=1), 40)

        cancelled = await scheduler.cancel(job_id)

        assert cancelled.state == JobState.CANCELLED
        assert cancelled.cancelled_at == clock.now

    @pytest.mark.asyncio
    async def test_second_cancel_raises_invalid_state(self, scheduler, clock):
        job_id = await scheduler.schedule("draft-c", "linkedin", clock.now + timedelta(hours=1), 40)
        await scheduler.cancel(job_id)

        with pytest.raises(InvalidStateError) as exc_info:
            await scheduler.cancel(job_id)
        assert exc_info.value.current == "cancelled"

    @pytest.mark.asyncio
    async def test_cancel_claimed_job_raises(self, scheduler, store, clock):
        job_id = await scheduler.schedule("draft-c", "linkedin", clock.now, 40)
        await store.update_job(
            job_id,
            {"state": "claimed", "claim_token": "tok", "claimed_until": (clock.now + timedelta(minutes=2)).isoformat()},
            expected_state="pending",
            expected_token=None,
        )

        with pytest.raises(InvalidStateError):
            await scheduler.cancel(job_id)
        assert (await scheduler.get_job(job_id)).state == JobState.CLAIMED

    @pytest.mark.asyncio
    async def test_cancel_losing_race_to_claim_raises(self, scheduler, store, clock):
        job_id = await scheduler.schedule("draft-c", "linkedin", clock.now, 40)
        original_update = store.update_job

        async def claim_first(job_id_, changes, expected_state, expected_token):
            # A worker claims the job between cancel's read and its write.
            await original_update(
                job_id_,
                {"state": "claimed", "claim_token": "worker"},
                expected_state="pending",
                expected_token=None,
            )
            return await original_update(job_id_, changes, expected_state, expected_token)

        store.update_job = claim_first
        with pytest.raises(InvalidStateError):
            await scheduler.cancel(job_id)

    @pytest.mark.asyncio
    async def test_cancel_unknown_job_raises_not_found(self, scheduler):
        with pytest.raises(JobNotFoundError):
            await scheduler.cancel("missing")


# =============================================================================
# Queries
# =============================================================================


class TestQueries:
    @pytest.mark.asyncio
    async def test_list_jobs_filters_by_state(self, scheduler, clock):
        keep = await scheduler.schedule("a", "linkedin", clock.now + timedelta(hours=2), 10)
        drop = await scheduler.schedule("b", "linkedin", clock.now + timedelta(hours=1), 10)
        await scheduler.cancel(drop)

        pending = await scheduler.list_jobs(JobState.PENDING)
        assert [j.id for j in pending] == [keep]

    @pytest.mark.asyncio
    async def test_list_jobs_orders_by_due_at(self, scheduler, clock):
        later = await scheduler.schedule("a", "linkedin", clock.now + timedelta(hours=2), 10)
        sooner = await scheduler.schedule("b", "linkedin", clock.now + timedelta(hours=1), 10)
        assert [j.id for j in await scheduler.list_jobs()] == [sooner, later]

    @pytest.mark.asyncio
    async def test_get_job_unknown_raises(self, scheduler):
        with pytest.raises(JobNotFoundError):
            await scheduler.get_job("nope")


# =============================================================================
# State machine
# =============================================================================


class TestEnsureTransition:
    @pytest.mark.parametrize(
        "current,target",
        [
            (JobState.PENDING, JobState.CLAIMED),
            (JobState.PENDING, JobState.CANCELLED),
            (JobState.CLAIMED, JobState.PUBLISHING),
            (JobState.PUBLISHING, JobState.PUBLISHED),
            (JobState.PUBLISHING, JobState.PENDING),
            (JobState.PUBLISHING, JobState.FAILED),
        ],
    )
    def test_allowed_transitions(self, current, target):
        ensure_transition(current, target, "job-1")

    @pytest.mark.parametrize(
        "current,target",
        [
            (JobState.PENDING, JobState.PUBLISHING),
            (JobState.PENDING, JobState.PUBLISHED),
            (JobState.CLAIMED, JobState.PUBLISHED),
            (JobState.CLAIMED, JobState.CANCELLED),
        ],
    )
    def test_skipping_states_raises(self, current, target):
        with pytest.raises(InvalidStateError):
            ensure_transition(current, target, "job-1")

    @pytest.mark.parametrize("terminal", [JobState.PUBLISHED, JobState.FAILED, JobState.CANCELLED])
    @pytest.mark.parametrize("target", list(JobState))
    def test_terminal_states_accept_nothing(self, terminal, target):
        with pytest.raises(InvalidStateError) as exc_info:
            ensure_transition(terminal, target, "job-1")
        assert "terminal" in str(exc_info.value)


class TestEligibility:
    def _job(self, now, **overrides):
        fields = dict(
            id="j",
            content_ref="c",
            platform=Platform.LINKEDIN,
            due_at=now,
            predicted_score=50,
        )
        fields.update(overrides)
        return JobRecord(**fields)

    def test_pending_due_is_eligible(self, sample_utc_now):
        assert is_eligible(self._job(sample_utc_now), sample_utc_now)

    def test_pending_future_is_not_eligible(self, sample_utc_now):
        job = self._job(sample_utc_now, due_at=sample_utc_now + timedelta(days=1))
        assert not is_eligible(job, sample_utc_now)

    def test_claimed_with_live_lease_is_not_eligible(self, sample_utc_now):
        job = self._job(
            sample_utc_now,
            state=JobState.CLAIMED,
            claim_token="t",
            claimed_until=sample_utc_now + timedelta(seconds=30),
        )
        assert not is_eligible(job, sample_utc_now)

    def test_publishing_with_expired_lease_is_eligible(self, sample_utc_now):
        job = self._job(
            sample_utc_now,
            state=JobState.PUBLISHING,
            claim_token="t",
            claimed_until=sample_utc_now - timedelta(seconds=1),
        )
        assert is_eligible(job, sample_utc_now)

    def test_terminal_is_never_eligible(self, sample_utc_now):
        job = self._job(sample_utc_now, state=JobState.PUBLISHED)
        assert not is_eligible(job, sample_utc_now)

    def test_resolve_platform_passthrough(self):
        assert resolve_platform(Platform.LINKEDIN) is Platform.LINKEDIN
        assert resolve_platform("x") is Platform.MICROBLOG
