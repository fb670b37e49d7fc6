import asyncio

import pytest

from async_email_queue.dispatcher import BatchDispatcher
from async_email_queue.models import EmailStatus
from async_email_queue.rate_limit import SendRateLimiter
from async_email_queue.reclaim import StuckJobReclaimer
from async_email_queue.retry import RetryPolicy
from async_email_queue.transport import TransportError, TransportRateLimitError

from conftest import DummyTransport, make_job


class DummyMetrics:
    def __init__(self):
        self.sent = []
        self.failed = []
        self.rate_limited = []

    def inc_sent(self, school_id):
        self.sent.append(school_id)

    def inc_failed(self, school_id):
        self.failed.append(school_id)

    def inc_rate_limited(self, school_id):
        self.rate_limited.append(school_id)


def make_dispatcher(store, transport, clock, **kwargs):
    kwargs.setdefault("limiter", SendRateLimiter(2.0, clock=clock, sleep=clock.sleep))
    return BatchDispatcher(store, transport, clock=clock, **kwargs)


@pytest.mark.asyncio
async def test_happy_path_sends_every_due_job(store, transport, clock):
    ids = await store.insert_jobs([make_job(subject=f"n{i}") for i in range(3)], now=clock())
    metrics = DummyMetrics()
    dispatcher = make_dispatcher(store, transport, clock, metrics=metrics, from_address="noreply@school.org")

    result = await dispatcher.process_batch(10)

    assert result.processed_count == 3
    assert result.failed_count == 0
    assert [d.id for d in result.details] == ids
    assert all(d.status is EmailStatus.SENT for d in result.details)
    assert [m["subject"] for m in transport.sent] == ["n0", "n1", "n2"]
    assert transport.sent[0]["from"] == "noreply@school.org"
    assert metrics.sent == ["school-a"] * 3

    for job_id in ids:
        job = await store.get_job(job_id)
        assert job.status is EmailStatus.SENT
        assert job.sent_at is not None
        assert job.provider_message_id.startswith("msg-")
        events = await store.list_events(job_id)
        assert events[-1]["event_type"] == "sent"


@pytest.mark.asyncio
async def test_sends_are_spaced_by_min_interval(store, transport, clock):
    await store.insert_jobs([make_job() for _ in range(3)], now=clock())
    await make_dispatcher(store, transport, clock).process_batch(10)

    times = [m["at"] for m in transport.sent]
    assert all(later - earlier >= 2.0 for earlier, later in zip(times, times[1:]))


@pytest.mark.asyncio
async def test_spacing_holds_across_passes(store, transport, clock):
    await store.insert_jobs([make_job()], now=clock())
    await make_dispatcher(store, transport, clock).process_batch(10)

    await store.insert_jobs([make_job()], now=clock())
    # A fresh dispatcher learns the last send from the store.
    await make_dispatcher(store, transport, clock).process_batch(10)

    first, second = (m["at"] for m in transport.sent)
    assert second - first >= 2.0


@pytest.mark.asyncio
async def test_partial_failure_does_not_abort_the_pass(store, transport, clock):
    ok_id, bad_id, ok2_id = await store.insert_jobs(
        [
            make_job(recipient_email="ok@x.org"),
            make_job(recipient_email="bad@x.org"),
            make_job(recipient_email="ok2@x.org"),
        ],
        now=clock(),
    )
    transport.errors["bad@x.org"] = TransportError("550 mailbox unavailable")
    metrics = DummyMetrics()

    result = await make_dispatcher(store, transport, clock, metrics=metrics).process_batch(10)

    assert result.processed_count == 2
    assert result.failed_count == 1
    failed = await store.get_job(bad_id)
    assert failed.status is EmailStatus.FAILED
    assert failed.error_message == "550 mailbox unavailable"
    assert failed.retry_count == 0
    assert (await store.get_job(ok_id)).status is EmailStatus.SENT
    assert (await store.get_job(ok2_id)).status is EmailStatus.SENT
    detail = next(d for d in result.details if d.id == bad_id)
    assert detail.status is EmailStatus.FAILED
    assert detail.error == "550 mailbox unavailable"
    assert metrics.failed == ["school-a"]


@pytest.mark.asyncio
async def test_unexpected_exceptions_are_recorded_as_failures(store, transport, clock):
    (job_id,) = await store.insert_jobs([make_job(recipient_email="odd@x.org")], now=clock())
    transport.errors["odd@x.org"] = RuntimeError("socket closed")
    result = await make_dispatcher(store, transport, clock).process_batch(10)
    assert result.failed_count == 1
    assert (await store.get_job(job_id)).error_message == "socket closed"


@pytest.mark.asyncio
async def test_rate_limited_send_waits_for_release(store, transport, clock):
    (job_id,) = await store.insert_jobs([make_job(recipient_email="busy@x.org")], now=clock())
    transport.errors["busy@x.org"] = TransportRateLimitError("Too many requests", status=429)
    metrics = DummyMetrics()
    dispatcher = make_dispatcher(store, transport, clock, metrics=metrics, policy=RetryPolicy(rate_limited_delay=90))

    result = await dispatcher.process_batch(10)

    assert result.processed_count == 0
    assert result.failed_count == 1
    assert result.details[0].status is EmailStatus.RATE_LIMITED
    job = await store.get_job(job_id)
    assert job.status is EmailStatus.RATE_LIMITED
    assert job.next_retry_at == pytest.approx(clock() + 90)
    assert metrics.rate_limited == ["school-a"]
    assert (await store.list_events(job_id))[-1]["event_type"] == "rate_limited"


@pytest.mark.asyncio
async def test_future_jobs_and_other_states_are_skipped(store, transport, clock):
    await store.insert_jobs([make_job(scheduled_at=clock() + 3600)], now=clock())
    (cancelled,) = await store.insert_jobs([make_job()], now=clock())
    await store.cancel(cancelled, now=clock())

    result = await make_dispatcher(store, transport, clock).process_batch(10)
    assert result.processed_count == result.failed_count == 0
    assert transport.sent == []


@pytest.mark.asyncio
async def test_batch_size_caps_the_pass(store, transport, clock):
    await store.insert_jobs([make_job() for _ in range(5)], now=clock())
    result = await make_dispatcher(store, transport, clock).process_batch(2)
    assert result.processed_count == 2
    assert len(await store.fetch_due(limit=10, now=clock())) == 3


@pytest.mark.asyncio
async def test_invalid_batch_size(store, transport, clock):
    with pytest.raises(ValueError):
        await make_dispatcher(store, transport, clock).process_batch(0)


@pytest.mark.asyncio
async def test_overlapping_passes_send_each_job_once(store, clock):
    ids = await store.insert_jobs([make_job(subject=f"n{i}") for i in range(6)], now=clock())

    class SlowTransport(DummyTransport):
        async def send(self, to, subject, html, from_addr=None):
            await asyncio.sleep(0)
            return await super().send(to, subject, html, from_addr)

    transport = SlowTransport(clock)
    limiter = SendRateLimiter(0, clock=clock)
    first = BatchDispatcher(store, transport, limiter=limiter, clock=clock)
    second = BatchDispatcher(store, transport, limiter=limiter, clock=clock)

    results = await asyncio.gather(first.process_batch(10), second.process_batch(10))

    assert sum(r.processed_count for r in results) == 6
    assert sorted(m["subject"] for m in transport.sent) == sorted(f"n{i}" for i in range(6))
    for job_id in ids:
        assert (await store.get_job(job_id)).status is EmailStatus.SENT


@pytest.mark.asyncio
async def test_send_outliving_the_stuck_threshold_is_not_reported_sent(store, clock):
    (job_id,) = await store.insert_jobs([make_job()], now=clock())
    reclaimer = StuckJobReclaimer(store, clock=clock)

    class HangingTransport(DummyTransport):
        async def send(self, to, subject, html, from_addr=None):
            clock.advance(11 * 60)
            assert await reclaimer.retry_stuck_emails() != []
            return await super().send(to, subject, html, from_addr)

    metrics = DummyMetrics()
    result = await make_dispatcher(store, HangingTransport(clock), clock, metrics=metrics).process_batch(10)

    assert result.processed_count == 0
    assert result.failed_count == 0
    assert result.skipped_count == 1
    assert result.details == []
    assert metrics.sent == []

    job = await store.get_job(job_id)
    assert job.status is EmailStatus.PENDING
    assert job.sent_at is None
    assert [e["event_type"] for e in await store.list_events(job_id)] == ["reclaimed"]


@pytest.mark.asyncio
async def test_failure_after_reclaim_is_not_recorded(store, clock):
    (job_id,) = await store.insert_jobs([make_job()], now=clock())
    reclaimer = StuckJobReclaimer(store, clock=clock)

    class HangingTransport(DummyTransport):
        async def send(self, to, subject, html, from_addr=None):
            clock.advance(11 * 60)
            await reclaimer.retry_stuck_emails()
            raise TransportError("connection reset")

    metrics = DummyMetrics()
    result = await make_dispatcher(store, HangingTransport(clock), clock, metrics=metrics).process_batch(10)

    assert result.skipped_count == 1
    assert result.failed_count == 0
    assert metrics.failed == []
    job = await store.get_job(job_id)
    assert job.status is EmailStatus.PENDING
    assert job.error_message is None
