# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Unit tests for the job ledger, its middleware and the queue manager."""

from datetime import timedelta
from unittest.mock import MagicMock

import pytest
from dramatiq import Message
from dramatiq.broker import MessageProxy
from dramatiq.middleware import CurrentMessage, SkipMessage
from dramatiq.rate_limits import RateLimitExceeded

from edumanage.core.config.settings import QueueSettings
from edumanage.domains.build.exceptions import OrderNotFoundError, StageError
from edumanage.infrastructure.background.broker import (
    Queues,
    UnknownQueueError,
    get_broker_manager,
    get_queue_configs,
)
from edumanage.infrastructure.background.ledger import (
    InMemoryJobLedger,
    JobRecord,
    JobState,
    RedisJobLedger,
)
from edumanage.infrastructure.background.middleware import (
    DeadLetterMiddleware,
    JobLedgerMiddleware,
    describe_error,
)
from edumanage.infrastructure.background.queue import QueueManager
from edumanage.infrastructure.background.tasks import (
    should_retry_build,
    should_retry_notification,
)
from edumanage.infrastructure.background.tasks.base import concurrency_slot
from edumanage.utils.datetime import utc_now


def make_message(
    job_id: str = "job-1",
    queue: str = Queues.BUILDS,
    actor_name: str = "process_build",
) -> Message:
    return Message(
        queue_name=queue,
        actor_name=actor_name,
        args=(),
        kwargs={"build_id": "BLD-1-ABCDEF"},
        options={},
        message_id=job_id,
    )


@pytest.fixture
def ledger() -> InMemoryJobLedger:
    return InMemoryJobLedger()


@pytest.fixture
def queue_manager():
    manager = QueueManager()
    yield manager
    manager.manager.broker.flush_all()
    manager.manager.ledger.clear()


class TestQueueConfigs:
    """Tests for per-queue delivery policy."""

    def test_build_queue_defaults(self) -> None:
        configs = get_queue_configs(QueueSettings(build_backoff_ms=5000))
        builds = configs[Queues.BUILDS]

        assert builds.actor_name == "process_build"
        assert builds.concurrency == 1
        assert builds.max_retries == 3
        assert builds.keep_completed == 100
        assert builds.keep_failed == 50
        assert builds.max_backoff_ms == 40000

    def test_notification_queue_retention(self) -> None:
        notifications = get_queue_configs(QueueSettings())[Queues.NOTIFICATIONS]

        assert notifications.actor_name == "send_notification"
        assert notifications.keep_completed == 500
        assert notifications.keep_failed == 100


class TestInMemoryJobLedger:
    """Tests for job state bookkeeping."""

    def test_lifecycle_counts(self, ledger: InMemoryJobLedger) -> None:
        ledger.mark("builds", "a", JobState.WAITING, actor_name="process_build")
        ledger.mark("builds", "b", JobState.WAITING)
        ledger.mark("builds", "a", JobState.ACTIVE)

        counts = ledger.counts("builds")

        assert counts[JobState.WAITING] == 1
        assert counts[JobState.ACTIVE] == 1
        assert ledger.counts("notifications")[JobState.WAITING] == 0

    def test_attempts_count_activations(self, ledger: InMemoryJobLedger) -> None:
        ledger.mark("builds", "a", JobState.WAITING)
        ledger.mark("builds", "a", JobState.ACTIVE)
        ledger.mark("builds", "a", JobState.DELAYED, error="RuntimeError: db")
        ledger.mark("builds", "a", JobState.WAITING)
        record = ledger.mark("builds", "a", JobState.ACTIVE)

        assert record.attempts == 2
        assert record.error == "RuntimeError: db"
        assert record.finished_at is None

    def test_waiting_never_follows_pickup(self, ledger: InMemoryJobLedger) -> None:
        ledger.mark("builds", "a", JobState.ACTIVE)
        ledger.mark("builds", "b", JobState.COMPLETED)

        assert ledger.mark("builds", "a", JobState.WAITING).state == JobState.ACTIVE
        assert ledger.mark("builds", "b", JobState.WAITING).state == JobState.COMPLETED
        assert ledger.mark("builds", "b", JobState.DELAYED).state == JobState.COMPLETED
        counts = ledger.counts("builds")
        assert counts[JobState.WAITING] == 0
        assert counts[JobState.COMPLETED] == 1

    def test_delayed_job_becomes_waiting_again(self, ledger: InMemoryJobLedger) -> None:
        ledger.mark("builds", "a", JobState.DELAYED)

        assert ledger.mark("builds", "a", JobState.WAITING).state == JobState.WAITING

    def test_mark_of_superseded_attempt_is_ignored(self, ledger: InMemoryJobLedger) -> None:
        ledger.mark("builds", "a", JobState.ACTIVE)
        ledger.mark("builds", "a", JobState.ACTIVE)

        record = ledger.mark("builds", "a", JobState.FAILED, error="RuntimeError: db", attempt=1)

        assert record.state == JobState.ACTIVE
        assert record.attempts == 2
        assert record.error is None

    def test_retention_keeps_most_recent(self, ledger: InMemoryJobLedger) -> None:
        ledger.configure("builds", keep_completed=2, keep_failed=1)
        for job_id in ("a", "b", "c"):
            ledger.mark("builds", job_id, JobState.COMPLETED)
        for job_id in ("x", "y"):
            ledger.mark("builds", job_id, JobState.FAILED)

        assert ledger.get("a") is None
        assert ledger.get("c").state == JobState.COMPLETED
        assert ledger.get("x") is None
        counts = ledger.counts("builds")
        assert counts[JobState.COMPLETED] == 2
        assert counts[JobState.FAILED] == 1

    def test_clean_removes_only_old_finished_jobs(self, ledger: InMemoryJobLedger) -> None:
        now = utc_now()
        ledger.mark("builds", "old", JobState.COMPLETED, now=now - timedelta(days=8))
        ledger.mark("builds", "old-failed", JobState.FAILED, now=now - timedelta(days=10))
        ledger.mark("builds", "recent", JobState.COMPLETED, now=now - timedelta(days=1))
        ledger.mark("builds", "waiting", JobState.WAITING, now=now - timedelta(days=30))

        removed = ledger.clean("builds", timedelta(days=7), now=now)

        assert removed == 2
        assert ledger.get("old") is None
        assert ledger.get("recent") is not None
        assert ledger.get("waiting") is not None

    def test_pause_flags(self, ledger: InMemoryJobLedger) -> None:
        ledger.pause("builds")

        assert ledger.is_paused("builds")
        assert not ledger.is_paused("notifications")
        ledger.resume("builds")
        assert not ledger.is_paused("builds")

    def test_returned_records_are_copies(self, ledger: InMemoryJobLedger) -> None:
        record = ledger.mark("builds", "a", JobState.WAITING)
        record.state = JobState.FAILED

        assert ledger.get("a").state == JobState.WAITING


class TestRedisJobLedger:
    """Tests for the Redis key layout."""

    def test_pause_uses_queue_key(self) -> None:
        client = MagicMock()
        client.exists.return_value = 1
        ledger = RedisJobLedger(client)

        ledger.pause("builds")

        client.set.assert_called_once_with("edumanage:queues:builds:paused", "1")
        assert ledger.is_paused("builds")

    def test_get_parses_record(self) -> None:
        client = MagicMock()
        record = JobRecord(job_id="a", queue="builds", state=JobState.FAILED, error="boom")
        client.get.return_value = record.model_dump_json()

        loaded = RedisJobLedger(client).get("a")

        client.get.assert_called_once_with("edumanage:jobs:a")
        assert loaded.state == JobState.FAILED
        assert loaded.error == "boom"

    def test_mark_runs_in_watched_transaction(self) -> None:
        client = MagicMock()
        pipe = MagicMock()
        pipe.get.return_value = None
        client.transaction.side_effect = lambda func, *watches, **kwargs: func(pipe)

        record = RedisJobLedger(client).mark("builds", "a", JobState.WAITING, actor_name="process_build")

        assert record.state == JobState.WAITING
        assert client.transaction.call_args.args[1:] == ("edumanage:jobs:a",)
        pipe.multi.assert_called_once()
        pipe.sadd.assert_called_once_with("edumanage:queues:builds:waiting", "a")

    def test_late_waiting_mark_writes_nothing(self) -> None:
        client = MagicMock()
        pipe = MagicMock()
        pipe.get.return_value = JobRecord(
            job_id="a", queue="builds", state=JobState.COMPLETED, attempts=1
        ).model_dump_json()
        client.transaction.side_effect = lambda func, *watches, **kwargs: func(pipe)

        record = RedisJobLedger(client).mark("builds", "a", JobState.WAITING)

        assert record.state == JobState.COMPLETED
        pipe.multi.assert_not_called()
        pipe.sadd.assert_not_called()

    def test_counts_reads_every_state(self) -> None:
        client = MagicMock()
        pipe = client.pipeline.return_value.__enter__.return_value
        pipe.execute.return_value = [1, 2, 0, 5, 3]

        counts = RedisJobLedger(client).counts("builds")

        assert counts[JobState.WAITING] == 1
        assert counts[JobState.COMPLETED] == 5
        assert counts[JobState.FAILED] == 3


class TestJobLedgerMiddleware:
    """Tests for feeding the ledger from message events."""

    def test_enqueue_marks_waiting_or_delayed(self, ledger: InMemoryJobLedger) -> None:
        middleware = JobLedgerMiddleware(ledger)
        broker = MagicMock()

        middleware.before_enqueue(broker, make_message("a"), None)
        middleware.before_enqueue(broker, make_message("b", queue="builds.DQ"), 5000)

        assert ledger.get("a").state == JobState.WAITING
        assert ledger.get("a").kwargs == {"build_id": "BLD-1-ABCDEF"}
        assert ledger.get("b").state == JobState.DELAYED
        assert ledger.get("b").queue == "builds"

    def test_process_outcomes(self, ledger: InMemoryJobLedger) -> None:
        middleware = JobLedgerMiddleware(ledger)
        broker = MagicMock()
        message = MessageProxy(make_message("a"))
        middleware.before_enqueue(broker, message, None)

        middleware.before_process_message(broker, message)
        assert ledger.get("a").state == JobState.ACTIVE

        middleware.after_process_message(broker, message, exception=RuntimeError("db hiccup"))
        assert ledger.get("a").state == JobState.DELAYED

        message.fail()
        middleware.after_process_message(broker, message, exception=RuntimeError("db hiccup"))
        record = ledger.get("a")
        assert record.state == JobState.FAILED
        assert record.error == "RuntimeError: db hiccup"

    def test_late_enqueue_hook_keeps_outcome(self, ledger: InMemoryJobLedger) -> None:
        middleware = JobLedgerMiddleware(ledger)
        broker = MagicMock()
        message = MessageProxy(make_message("a"))

        middleware.before_process_message(broker, message)
        middleware.after_process_message(broker, message, result={"status": "completed"})
        middleware.before_enqueue(broker, message, None)

        counts = ledger.counts("builds")
        assert counts[JobState.COMPLETED] == 1
        assert counts[JobState.WAITING] == 0

    def test_outcome_of_earlier_attempt_is_ignored(self, ledger: InMemoryJobLedger) -> None:
        middleware = JobLedgerMiddleware(ledger)
        broker = MagicMock()
        first = MessageProxy(make_message("a"))
        second = MessageProxy(make_message("a"))

        middleware.before_process_message(broker, first)
        middleware.before_process_message(broker, second)
        middleware.after_process_message(broker, first, exception=RuntimeError("db hiccup"))
        assert ledger.get("a").state == JobState.ACTIVE

        middleware.after_process_message(broker, second, result={"status": "completed"})
        record = ledger.get("a")
        assert record.state == JobState.COMPLETED
        assert record.attempts == 2

    def test_success_marks_completed(self, ledger: InMemoryJobLedger) -> None:
        middleware = JobLedgerMiddleware(ledger)
        message = MessageProxy(make_message("a"))

        middleware.after_process_message(MagicMock(), message, result={"status": "completed"})

        assert ledger.get("a").state == JobState.COMPLETED

    def test_paused_queue_defers_message(self, ledger: InMemoryJobLedger) -> None:
        middleware = JobLedgerMiddleware(ledger, pause_poll_ms=250)
        broker = MagicMock()
        ledger.pause("builds")

        with pytest.raises(SkipMessage):
            middleware.before_process_message(broker, MessageProxy(make_message("a")))

        deferred, = broker.enqueue.call_args.args
        assert deferred.message_id == "a"
        assert broker.enqueue.call_args.kwargs["delay"] == 250
        assert ledger.get("a") is None

    def test_describe_error(self) -> None:
        assert describe_error(ValueError("bad kind")) == "ValueError: bad kind"


class TestDeadLetterMiddleware:
    """Tests for handing dead-lettered jobs to their handler actor."""

    def make_middleware(self) -> DeadLetterMiddleware:
        return DeadLetterMiddleware({"process_build": "fail_undelivered_build"})

    def test_failed_message_is_sent_to_handler(self) -> None:
        broker = MagicMock()
        message = MessageProxy(make_message("a"))
        message.fail()

        self.make_middleware().after_process_message(
            broker, message, exception=ConnectionError("database unreachable")
        )

        broker.get_actor.assert_called_once_with("fail_undelivered_build")
        broker.get_actor.return_value.send_with_options.assert_called_once_with(
            args=(),
            kwargs={"build_id": "BLD-1-ABCDEF", "error": "ConnectionError: database unreachable"},
        )

    def test_retried_or_successful_messages_are_ignored(self) -> None:
        broker = MagicMock()
        middleware = self.make_middleware()
        message = MessageProxy(make_message("a"))

        middleware.after_process_message(broker, message, exception=RuntimeError("db hiccup"))
        middleware.after_process_message(broker, message, result={"status": "completed"})

        broker.get_actor.assert_not_called()

    def test_actor_without_handler_is_ignored(self) -> None:
        broker = MagicMock()
        message = MessageProxy(make_message("a", Queues.NOTIFICATIONS, "send_notification"))
        message.fail()

        self.make_middleware().after_process_message(broker, message, exception=OSError("smtp down"))

        broker.get_actor.assert_not_called()


class TestRetryPredicates:
    """Tests for which failures the queue retries."""

    def test_domain_errors_are_dead_lettered(self) -> None:
        assert not should_retry_build(0, StageError("upload", "ConnectionError: reset"))
        assert not should_retry_build(0, OrderNotFoundError("ORD-404"))

    def test_infrastructure_errors_retry_until_limit(self) -> None:
        max_retries = get_broker_manager().config(Queues.BUILDS).max_retries

        assert should_retry_build(0, RuntimeError("db hiccup"))
        assert not should_retry_build(max_retries, RuntimeError("db hiccup"))

    def test_unknown_notification_kind_not_retried(self) -> None:
        assert not should_retry_notification(0, ValueError("'nope' is not a valid NotificationKind"))
        assert should_retry_notification(0, OSError("smtp unreachable"))


class TestConcurrencySlot:
    """Tests for waiting on a queue's concurrency limit."""

    def test_busy_queue_defers_message_without_using_a_retry(self, queue_manager: QueueManager) -> None:
        broker = queue_manager.manager.broker
        message = MessageProxy(make_message("a"))
        current = CurrentMessage()
        current.before_process_message(broker, message)
        limiter = queue_manager.concurrency_limiter(Queues.BUILDS)

        try:
            with limiter.acquire(raise_on_failure=True):
                with pytest.raises(SkipMessage):
                    with concurrency_slot(Queues.BUILDS):
                        pytest.fail("ran without a free slot")
        finally:
            current.after_process_message(broker, message)

        assert broker.queues[f"{Queues.BUILDS}.DQ"].qsize() == 1
        assert queue_manager.get_job_status(Queues.BUILDS, "a").state == JobState.DELAYED
        assert "retries" not in message.options

    def test_free_slot_runs_body(self, queue_manager: QueueManager) -> None:
        ran = []

        with concurrency_slot(Queues.BUILDS):
            ran.append(True)

        assert ran == [True]
        assert queue_manager.manager.broker.queues[f"{Queues.BUILDS}.DQ"].qsize() == 0


class TestQueueManager:
    """Tests for the producer-side queue API."""

    def test_add_records_waiting_job(self, queue_manager: QueueManager) -> None:
        job_id = queue_manager.add(Queues.BUILDS, {"build_id": "BLD-1-ABCDEF"})

        record = queue_manager.get_job_status(Queues.BUILDS, job_id)
        assert record.state == JobState.WAITING
        assert record.kwargs == {"build_id": "BLD-1-ABCDEF"}
        assert queue_manager.manager.broker.queues[Queues.BUILDS].qsize() == 1

    def test_delayed_add(self, queue_manager: QueueManager) -> None:
        job_id = queue_manager.add(Queues.BUILDS, {"build_id": "BLD-1-ABCDEF"}, delay_ms=60000)

        assert queue_manager.get_job_status(Queues.BUILDS, job_id).state == JobState.DELAYED
        assert queue_manager.get_queue_stats(Queues.BUILDS).delayed == 1

    @pytest.mark.asyncio
    async def test_enqueue_build(self, queue_manager: QueueManager) -> None:
        job_id = await queue_manager.enqueue_build("BLD-1-ABCDEF")

        assert queue_manager.get_job_status(Queues.BUILDS, job_id).actor_name == "process_build"

    def test_job_status_is_scoped_to_queue(self, queue_manager: QueueManager) -> None:
        job_id = queue_manager.add(Queues.BUILDS, {"build_id": "BLD-1-ABCDEF"})

        assert queue_manager.get_job_status(Queues.NOTIFICATIONS, job_id) is None
        assert queue_manager.get_job_status(Queues.BUILDS, "missing") is None

    def test_stats(self, queue_manager: QueueManager) -> None:
        queue_manager.add(Queues.BUILDS, {"build_id": "BLD-1-AAAAAA"})
        queue_manager.add(Queues.BUILDS, {"build_id": "BLD-2-BBBBBB"})
        queue_manager.pause(Queues.BUILDS)

        stats = queue_manager.get_queue_stats(Queues.BUILDS)

        assert stats.waiting == 2
        assert stats.total == 2
        assert stats.paused
        queue_manager.resume(Queues.BUILDS)
        assert not queue_manager.get_queue_stats(Queues.BUILDS).paused

    def test_clean_old_jobs(self, queue_manager: QueueManager) -> None:
        ledger = queue_manager.manager.ledger
        ledger.mark(Queues.BUILDS, "old", JobState.COMPLETED, now=utc_now() - timedelta(days=8))
        ledger.mark(Queues.BUILDS, "new", JobState.COMPLETED)

        assert queue_manager.clean_old_jobs(Queues.BUILDS) == 1
        assert queue_manager.get_job_status(Queues.BUILDS, "new") is not None

    def test_unknown_queue(self, queue_manager: QueueManager) -> None:
        with pytest.raises(UnknownQueueError, match="Queue reports not found"):
            queue_manager.get_queue_stats("reports")
        with pytest.raises(UnknownQueueError):
            queue_manager.add("reports", {})

    def test_concurrency_limiter_uses_queue_limit(self, queue_manager: QueueManager) -> None:
        limiter = queue_manager.concurrency_limiter(Queues.BUILDS)

        with limiter.acquire(raise_on_failure=True):
            with pytest.raises(RateLimitExceeded):
                with limiter.acquire(raise_on_failure=True):
                    pass
