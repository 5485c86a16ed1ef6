"""
Unit Tests - Job Queue

Job stores (in-memory and SQL), the dispatcher and the start-rate limiter.
"""

from datetime import timedelta

import pytest

from tasktree.core.exceptions import InvalidJobTransition, JobNotFoundError
from tasktree.core.types import utc_now
from tasktree.worker.dispatcher import JobDispatcher
from tasktree.worker.jobs import EnqueueRequest, InMemoryJobStore, Job, JobStatus
from tasktree.worker.ratelimit import SlidingWindowRateLimiter
from tasktree.worker.store import SqlJobStore


def _request(session_key: str = "brand-1", step: str = "social-analysis", **kwargs) -> EnqueueRequest:
    return EnqueueRequest(session_key=session_key, workflow_step=step, **kwargs)


class TestJobDispatcher:
    """Tests for JobDispatcher over the in-memory store."""

    @pytest.mark.asyncio
    async def test_enqueue_returns_prefixed_id(self, dispatcher):
        """Job ids carry the queue name."""
        job_id = await dispatcher.enqueue(_request())

        assert job_id.startswith("test-")
        status = await dispatcher.get_status(job_id)
        assert status == {
            "job_id": job_id,
            "status": "queued",
            "progress_percent": 0,
            "attempts": 0,
        }

    @pytest.mark.asyncio
    async def test_enqueue_is_idempotent_while_open(self, dispatcher, metrics):
        """A second enqueue for an open session returns the existing job."""
        first = await dispatcher.enqueue(_request())
        second = await dispatcher.enqueue(_request(step="brand-identity"))

        assert first == second
        assert (await dispatcher.get(first)).workflow_step == "social-analysis"
        assert metrics.counter("jobs_enqueued_total").get(queue="test") == 1
        assert metrics.counter("jobs_deduplicated_total").get(queue="test") == 1

    @pytest.mark.asyncio
    async def test_other_sessions_are_independent(self, dispatcher):
        """Different session keys get different jobs."""
        first = await dispatcher.enqueue(_request("brand-1"))
        second = await dispatcher.enqueue(_request("brand-2"))
        assert first != second

    @pytest.mark.asyncio
    async def test_new_job_after_previous_finished(self, dispatcher, job_store):
        """Once the open job is final, the session can be enqueued again."""
        first = await dispatcher.enqueue(_request())
        job = await job_store.claim_next("w1")
        await job_store.update(
            job.model_copy(update={"status": JobStatus.COMPLETED, "finished_at": utc_now()})
        )

        second = await dispatcher.enqueue(_request(step="brand-identity"))
        assert second != first

    @pytest.mark.asyncio
    async def test_unknown_job_raises(self, dispatcher):
        """get() and cancel() raise JobNotFoundError for unknown ids."""
        with pytest.raises(JobNotFoundError):
            await dispatcher.get("test-missing")
        with pytest.raises(JobNotFoundError):
            await dispatcher.cancel("test-missing")

    @pytest.mark.asyncio
    async def test_cancel_queued_job_fails_it(self, dispatcher):
        """A queued job fails immediately with reason "cancelled"."""
        job_id = await dispatcher.enqueue(_request())
        notified = []
        dispatcher.add_cancel_listener(notified.append)

        job = await dispatcher.cancel(job_id)

        assert job.status == JobStatus.FAILED
        assert (await dispatcher.get_status(job_id))["error"] == "cancelled"
        assert notified == []

    @pytest.mark.asyncio
    async def test_cancel_active_job_notifies_listeners(self, dispatcher, job_store):
        """An active job is flagged and local listeners are told."""
        job_id = await dispatcher.enqueue(_request())
        await job_store.claim_next("w1")
        notified = []
        dispatcher.add_cancel_listener(notified.append)

        job = await dispatcher.cancel(job_id)

        assert job.status == JobStatus.ACTIVE
        assert job.cancel_requested
        assert notified == [job_id]

    @pytest.mark.asyncio
    async def test_progress_never_lowers(self, dispatcher, job_store):
        """Progress only moves forward and is capped at 100."""
        job_id = await dispatcher.enqueue(_request())
        await job_store.claim_next("w1")

        await dispatcher.report_progress(job_id, 40)
        await dispatcher.report_progress(job_id, 20)
        assert (await dispatcher.get(job_id)).progress_percent == 40

        await dispatcher.report_progress(job_id, 150)
        assert (await dispatcher.get(job_id)).progress_percent == 100

    @pytest.mark.asyncio
    async def test_purge_expired(self):
        """Final jobs past their retention window are removed."""
        now = [utc_now() + timedelta(seconds=1)]
        store = InMemoryJobStore(clock=lambda: now[0])
        dispatcher = JobDispatcher(store, completed_retention_seconds=3600)

        job_id = await dispatcher.enqueue(_request())
        job = await store.claim_next("w1")
        await store.update(
            job.model_copy(update={"status": JobStatus.COMPLETED, "finished_at": now[0]})
        )

        assert (await dispatcher.purge_expired())["completed"] == 0

        now[0] += timedelta(hours=2)
        counts = await dispatcher.purge_expired()
        assert counts == {"completed": 1, "failed": 0, "dead_lettered": 0}
        with pytest.raises(JobNotFoundError):
            await dispatcher.get(job_id)


class TestInMemoryJobStore:
    """Tests for claim ordering and transitions."""

    @pytest.mark.asyncio
    async def test_claim_is_exactly_once(self, job_store):
        """A queued job is claimed by one worker only."""
        await job_store.create_or_get_active(Job(job_id="j1", session_key="s1", workflow_step="a"))

        claimed = await job_store.claim_next("w1")
        assert claimed.status == JobStatus.ACTIVE
        assert claimed.attempts == 1
        assert claimed.worker_id == "w1"
        assert await job_store.claim_next("w2") is None

    @pytest.mark.asyncio
    async def test_claim_respects_run_after(self, job_store):
        """Jobs scheduled in the future are not claimed yet."""
        await job_store.create_or_get_active(
            Job(
                job_id="j1",
                session_key="s1",
                workflow_step="a",
                run_after=utc_now() + timedelta(minutes=5),
            )
        )
        assert await job_store.claim_next("w1") is None

    @pytest.mark.asyncio
    async def test_final_status_is_final(self, job_store):
        """A completed job cannot go back to active."""
        await job_store.create_or_get_active(Job(job_id="j1", session_key="s1", workflow_step="a"))
        job = await job_store.claim_next("w1")
        done = await job_store.update(job.model_copy(update={"status": JobStatus.COMPLETED}))

        with pytest.raises(InvalidJobTransition):
            await job_store.update(done.model_copy(update={"status": JobStatus.ACTIVE}))

    @pytest.mark.asyncio
    async def test_queued_job_cannot_complete_directly(self, job_store):
        """queued → completed skips the claim and is rejected."""
        job, _ = await job_store.create_or_get_active(
            Job(job_id="j1", session_key="s1", workflow_step="a")
        )
        with pytest.raises(InvalidJobTransition):
            await job_store.update(job.model_copy(update={"status": JobStatus.COMPLETED}))


class TestSqlJobStore:
    """Tests for the SQL job store."""

    @pytest.mark.asyncio
    async def test_create_dedupes_open_job(self, sql_engine):
        """Only one open job per session key is stored."""
        store = SqlJobStore(sql_engine)
        first, created = await store.create_or_get_active(
            Job(job_id="j1", session_key="s1", workflow_step="a")
        )
        second, created_again = await store.create_or_get_active(
            Job(job_id="j2", session_key="s1", workflow_step="b")
        )

        assert created
        assert not created_again
        assert second.job_id == first.job_id
        assert await store.get("j2") is None

    @pytest.mark.asyncio
    async def test_claim_and_complete(self, sql_engine):
        """Claim increments attempts; a completed job keeps its result."""
        store = SqlJobStore(sql_engine)
        await store.create_or_get_active(Job(job_id="j1", session_key="s1", workflow_step="a"))

        claimed = await store.claim_next("w1")
        assert claimed.job_id == "j1"
        assert claimed.attempts == 1
        assert claimed.run_after.tzinfo is not None
        assert await store.claim_next("w2") is None

        done = await store.update(
            claimed.model_copy(
                update={
                    "status": JobStatus.COMPLETED,
                    "result": {"output": "ok"},
                    "finished_at": utc_now(),
                }
            )
        )
        assert done.result == {"output": "ok"}
        assert [j.job_id for j in await store.list_by_status(JobStatus.COMPLETED)] == ["j1"]

    @pytest.mark.asyncio
    async def test_invalid_transition_rejected(self, sql_engine):
        """Transitions are validated against the stored status."""
        store = SqlJobStore(sql_engine)
        job, _ = await store.create_or_get_active(
            Job(job_id="j1", session_key="s1", workflow_step="a")
        )
        with pytest.raises(InvalidJobTransition):
            await store.update(job.model_copy(update={"status": JobStatus.DEAD_LETTERED}))

    @pytest.mark.asyncio
    async def test_update_unknown_job_raises(self, sql_engine):
        """Updating a job that was never stored raises JobNotFoundError."""
        store = SqlJobStore(sql_engine)
        with pytest.raises(JobNotFoundError):
            await store.update(Job(job_id="ghost", session_key="s1", workflow_step="a"))

    @pytest.mark.asyncio
    async def test_cancel_and_progress(self, sql_engine):
        """Queued jobs fail on cancel; active ones are flagged and keep progress monotone."""
        store = SqlJobStore(sql_engine)
        await store.create_or_get_active(Job(job_id="j1", session_key="s1", workflow_step="a"))
        await store.create_or_get_active(Job(job_id="j2", session_key="s2", workflow_step="a"))

        cancelled = await store.request_cancel("j2")
        assert cancelled.status == JobStatus.FAILED
        assert cancelled.last_error == "cancelled"

        await store.claim_next("w1")
        await store.set_progress("j1", 60)
        await store.set_progress("j1", 30)
        flagged = await store.request_cancel("j1")

        assert flagged.status == JobStatus.ACTIVE
        assert flagged.cancel_requested
        assert flagged.progress_percent == 60
        assert await store.request_cancel("missing") is None

    @pytest.mark.asyncio
    async def test_purge(self, sql_engine):
        """Only final jobs finished before the cutoff are deleted."""
        store = SqlJobStore(sql_engine)
        await store.create_or_get_active(Job(job_id="j1", session_key="s1", workflow_step="a"))
        job = await store.claim_next("w1")
        await store.update(
            job.model_copy(
                update={"status": JobStatus.FAILED, "finished_at": utc_now() - timedelta(days=2)}
            )
        )

        assert await store.purge(JobStatus.COMPLETED, 86400) == 0
        assert await store.purge(JobStatus.FAILED, 86400) == 1
        assert await store.get("j1") is None


class TestSlidingWindowRateLimiter:
    """Tests for the start-rate limiter."""

    def test_rejects_past_limit_within_window(self):
        """At most max_events acquisitions per window."""
        now = [0.0]
        limiter = SlidingWindowRateLimiter(max_events=2, window_seconds=1.0, clock=lambda: now[0])

        assert limiter.try_acquire()
        assert limiter.try_acquire()
        assert not limiter.try_acquire()
        assert limiter.wait_time() == pytest.approx(1.0)

        now[0] = 1.0
        assert limiter.wait_time() == 0.0
        assert limiter.try_acquire()

    @pytest.mark.asyncio
    async def test_acquire_waits_for_a_slot(self):
        """acquire() blocks until the window frees a slot."""
        limiter = SlidingWindowRateLimiter(max_events=1, window_seconds=0.05)
        await limiter.acquire()
        await limiter.acquire()
        assert limiter.max_events == 1

    def test_invalid_limit(self):
        """max_events below 1 is rejected."""
        with pytest.raises(ValueError):
            SlidingWindowRateLimiter(max_events=0)
