# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Integration tests for the background actors.

A real Dramatiq Worker consumes the StubBroker, so messages go through
the full middleware stack (ledger, pause handling, retries). Worker
threads get their build context from in-memory repositories.
"""

import asyncio
import dataclasses
import time

import pytest
from dramatiq import Worker

from edumanage.bootstrap import BuildContext, set_worker_context_factory
from edumanage.domains.build.entity import BuildJob, BuildStatus
from edumanage.domains.build.orchestrator import BuildOrchestrator
from edumanage.infrastructure.background.broker import Queues, get_broker, get_broker_manager
from edumanage.infrastructure.background.ledger import JobState
from edumanage.infrastructure.background.queue import QueueManager
from edumanage.infrastructure.background.tasks import (
    QueuedNotifier,
    process_build,
    send_notification,
)
from edumanage.models.build import DispatchResult

from tests.fakes import InMemoryBuildRepository, InMemorySchoolRepository

pytestmark = [pytest.mark.integration, pytest.mark.slow]

JOIN_TIMEOUT_MS = 20_000


@pytest.fixture
def broker():
    broker = get_broker()
    broker.flush_all()
    yield broker
    broker.flush_all()
    get_broker_manager().ledger.clear()


@pytest.fixture
def ledger(broker):
    return get_broker_manager().ledger


@pytest.fixture
def worker(broker):
    worker = Worker(broker, worker_threads=2, worker_timeout=100)
    worker.start()
    yield worker
    worker.stop()


@pytest.fixture
def queue_manager(broker) -> QueueManager:
    manager = QueueManager()
    yield manager
    manager.resume(Queues.BUILDS)


@pytest.fixture
def worker_context(builds, orders, schools, packager, uploader, notifier):
    """Installs the context every worker thread uses; returns it for tweaks."""
    context = BuildContext(
        builds=builds,
        orders=orders,
        schools=schools,
        packager=packager,
        uploader=uploader,
        orchestrator=BuildOrchestrator(builds, orders, schools, packager, uploader, notifier),
    )
    holder = {"context": context}

    async def factory() -> BuildContext:
        return holder["context"]

    def replace(**changes) -> BuildContext:
        holder["context"] = dataclasses.replace(holder["context"], **changes)
        return holder["context"]

    set_worker_context_factory(factory)
    yield replace
    set_worker_context_factory(None)


def queue_build(builds, order) -> BuildJob:
    build = BuildJob.create(order.order_id, order.school_id, order.user_id, order.package_tier)
    asyncio.run(builds.add(build))
    return build


def drain(broker, worker, queue: str = Queues.BUILDS) -> None:
    broker.join(queue, fail_fast=False, timeout=JOIN_TIMEOUT_MS)
    worker.join()


class FlakyOrchestrator:
    """Raises a transient error on the first dispatch only."""

    def __init__(self) -> None:
        self.calls = 0

    async def dispatch(self, build_id: str) -> DispatchResult:
        self.calls += 1
        if self.calls == 1:
            raise RuntimeError("connection reset by peer")
        return DispatchResult(build_id=build_id, status=BuildStatus.COMPLETED)


class UnreachableBuildRepository(InMemoryBuildRepository):
    """Build reads fail the first few times, like a database that is down."""

    def __init__(self, failures: int) -> None:
        super().__init__()
        self.failures = failures

    async def get(self, build_id: str) -> BuildJob | None:
        if self.failures > 0:
            self.failures -= 1
            raise ConnectionError("database unreachable")
        return await super().get(build_id)


class TestProcessBuild:
    """Tests for the process_build actor."""

    def test_successful_build(self, broker, worker, ledger, worker_context, builds, sample_order, storage, notifier):
        worker_context()
        build = queue_build(builds, sample_order)

        message = process_build.send(build.build_id)
        drain(broker, worker)

        stored = asyncio.run(builds.get(build.build_id))
        assert stored.status == BuildStatus.COMPLETED
        assert stored.progress == 100
        assert any(key.endswith(".zip") for key in storage.objects)
        assert notifier.sent[0][0] == "build-complete"

        record = ledger.get(message.message_id)
        assert record.state == JobState.COMPLETED
        assert record.attempts == 1

    def test_enqueued_through_queue_manager(self, broker, worker, ledger, worker_context, builds, sample_order, queue_manager):
        worker_context()
        build = queue_build(builds, sample_order)

        job_id = asyncio.run(queue_manager.enqueue_build(build.build_id))
        drain(broker, worker)

        record = queue_manager.get_job_status(Queues.BUILDS, job_id)
        assert record.state == JobState.COMPLETED
        assert record.kwargs == {"build_id": build.build_id}
        assert queue_manager.get_job_status(Queues.NOTIFICATIONS, job_id) is None

        stats = queue_manager.get_queue_stats(Queues.BUILDS)
        assert stats.completed == 1
        assert stats.waiting == 0
        assert stats.active == 0

    def test_domain_error_is_dead_lettered_without_retry(self, broker, worker, ledger, worker_context, builds, sample_order):
        no_schools = InMemorySchoolRepository([])
        context = worker_context(schools=no_schools)
        worker_context(
            orchestrator=BuildOrchestrator(
                context.builds, context.orders, no_schools, context.packager, context.uploader
            )
        )
        build = queue_build(builds, sample_order)

        message = process_build.send(build.build_id)
        drain(broker, worker)

        record = ledger.get(message.message_id)
        assert record.state == JobState.FAILED
        assert record.attempts == 1
        assert "SchoolNotFoundError" in record.error
        assert len(broker.dead_letters) == 1

        stored = asyncio.run(builds.get(build.build_id))
        assert stored.status == BuildStatus.FAILED
        assert stored.error

    def test_stage_failure_fails_job_once(self, broker, worker, ledger, worker_context, builds, sample_order, storage):
        worker_context()
        storage.fail_with = ConnectionError("storage unreachable")
        build = queue_build(builds, sample_order)

        message = process_build.send(build.build_id)
        drain(broker, worker)

        record = ledger.get(message.message_id)
        assert record.state == JobState.FAILED
        assert record.attempts == 1
        assert "StageError" in record.error

        stored = asyncio.run(builds.get(build.build_id))
        assert stored.status == BuildStatus.FAILED
        assert stored.progress == 90

    def test_transient_error_is_retried(self, broker, worker, ledger, worker_context):
        flaky = FlakyOrchestrator()
        worker_context(orchestrator=flaky)

        message = process_build.send("BLD-1-ABCDEF")
        drain(broker, worker)

        record = ledger.get(message.message_id)
        assert flaky.calls == 2
        assert record.state == JobState.COMPLETED
        assert record.attempts == 2
        assert "RuntimeError" in record.error
        assert broker.dead_letters == []

    def test_dead_lettered_build_is_failed_for_manual_retry(self, broker, worker, ledger, worker_context, orders, sample_order):
        max_retries = get_broker_manager().config(Queues.BUILDS).max_retries
        unreachable = UnreachableBuildRepository(failures=max_retries + 1)
        context = worker_context(builds=unreachable)
        worker_context(
            orchestrator=BuildOrchestrator(
                unreachable, context.orders, context.schools, context.packager, context.uploader
            )
        )
        build = queue_build(unreachable, sample_order)

        message = process_build.send(build.build_id)
        drain(broker, worker)

        record = ledger.get(message.message_id)
        assert record.state == JobState.FAILED
        assert record.attempts == max_retries + 1
        assert len(broker.dead_letters) == 1

        stored = unreachable.items[build.build_id]
        assert stored.status == BuildStatus.FAILED
        assert stored.error == "Build job could not be delivered: ConnectionError: database unreachable"
        order = orders.items[sample_order.order_id]
        assert (order.status, order.build_status) == ("failed", "failed")

    def test_waiting_for_a_build_slot_keeps_retry_budget(self, broker, worker, ledger, worker_context):
        flaky = FlakyOrchestrator()
        worker_context(orchestrator=flaky)
        limiter = get_broker_manager().concurrency_limiter(Queues.BUILDS)

        with limiter.acquire(raise_on_failure=True):
            message = process_build.send("BLD-1-ABCDEF")
            time.sleep(0.8)
            assert flaky.calls == 0
        drain(broker, worker)

        record = ledger.get(message.message_id)
        assert flaky.calls == 2
        assert record.state == JobState.COMPLETED
        assert record.attempts > 2
        assert broker.dead_letters == []

    def test_paused_queue_holds_jobs_until_resumed(self, broker, worker, ledger, worker_context, builds, sample_order, queue_manager):
        worker_context()
        build = queue_build(builds, sample_order)

        queue_manager.pause(Queues.BUILDS)
        message = process_build.send(build.build_id)
        time.sleep(0.3)

        assert queue_manager.get_queue_stats(Queues.BUILDS).paused is True
        assert ledger.get(message.message_id).state in (JobState.WAITING, JobState.DELAYED)
        assert asyncio.run(builds.get(build.build_id)).status == BuildStatus.QUEUED

        queue_manager.resume(Queues.BUILDS)
        drain(broker, worker)

        assert ledger.get(message.message_id).state == JobState.COMPLETED
        assert asyncio.run(builds.get(build.build_id)).status == BuildStatus.COMPLETED


class TestSendNotification:
    """Tests for the send_notification actor."""

    def test_unconfigured_smtp_completes_as_skipped(self, broker, worker, ledger):
        message = send_notification.send(
            kind="build-complete",
            recipient_email="admin@greenwood.example",
            data={"school_name": "Greenwood Academy", "download_url": "https://bucket.example/a.zip"},
        )
        drain(broker, worker, Queues.NOTIFICATIONS)

        record = ledger.get(message.message_id)
        assert record.state == JobState.COMPLETED
        assert record.attempts == 1

    def test_unknown_kind_fails_without_retry(self, broker, worker, ledger):
        message = send_notification.send(
            kind="build-exploded",
            recipient_email="admin@greenwood.example",
            data={},
        )
        drain(broker, worker, Queues.NOTIFICATIONS)

        record = ledger.get(message.message_id)
        assert record.state == JobState.FAILED
        assert record.attempts == 1
        assert "ValueError" in record.error

    def test_queued_notifier_enqueues_job(self, broker, queue_manager):
        asyncio.run(
            QueuedNotifier().notify(
                "build-complete",
                "admin@greenwood.example",
                {"school_name": "Greenwood Academy"},
            )
        )

        stats = queue_manager.get_queue_stats(Queues.NOTIFICATIONS)
        assert stats.waiting == 1
        assert broker.queues[Queues.NOTIFICATIONS].qsize() == 1
