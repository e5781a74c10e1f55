from types import SimpleNamespace

import pytest

import JobQueue
from config import QueuePolicy
from CustomKafkaConsumer import JobWorker
from errors import QuotaExceeded, UpstreamUnavailable
from StatisticsTracker import StatisticsTracker


class FlakyHandler:
    def __init__(self, failures: int, error: Exception = RuntimeError("database restarting")):
        self.failures = failures
        self.error = error
        self.calls = 0

    def __call__(self, payload):
        self.calls += 1
        if self.calls <= self.failures:
            raise self.error
        return payload


@pytest.fixture
def stats(logger):
    return StatisticsTracker(logger)


def make_worker(handler, logger, producer, stats, queue_policy, consumer=None):
    return JobWorker(consumer, {"node-pings": handler}, logger, producer, stats, queue_policy)


def test_job_succeeds_after_retries(logger, producer, stats, queue_policy):
    handler = FlakyHandler(failures=2)
    worker = make_worker(handler, logger, producer, stats, queue_policy)

    assert worker.handle_message("node-pings", {"nodeId": "n1"}) is True
    assert handler.calls == 3
    assert producer.sent == []
    assert stats.outcomes["node-pings"] == {"retried": 1}


def test_exhausted_job_goes_to_problem_topic(logger, producer, stats, queue_policy):
    handler = FlakyHandler(failures=10)
    worker = make_worker(handler, logger, producer, stats, queue_policy)

    assert worker.handle_message("node-pings", {"nodeId": "n1"}) is False
    assert handler.calls == queue_policy.attempts
    assert producer.sent == [("problem.node-pings", {"nodeId": "n1"})]
    assert stats.outcomes["node-pings"]["dead_lettered"] == 1


def test_upstream_failures_are_retried(logger, producer, stats, queue_policy):
    handler = FlakyHandler(failures=1, error=UpstreamUnavailable())
    worker = make_worker(handler, logger, producer, stats, queue_policy)

    assert worker.handle_message("node-pings", {}) is True
    assert handler.calls == 2


def test_business_rule_rejection_is_not_retried(logger, producer, stats, queue_policy):
    handler = FlakyHandler(failures=10, error=QuotaExceeded())
    worker = make_worker(handler, logger, producer, stats, queue_policy)

    assert worker.handle_message("node-pings", {"nodeId": "n1"}) is False
    assert handler.calls == 1
    assert producer.sent[0][0] == "problem.node-pings"


def test_unknown_topic(logger, producer, stats, queue_policy):
    worker = make_worker(FlakyHandler(0), logger, producer, stats, queue_policy)

    assert worker.handle_message("other", {"x": 1}) is False
    assert producer.sent == [("problem.unknown_topic", {"x": 1})]


class FakeConsumer:
    def __init__(self, messages):
        self.messages = iter(messages)
        self.commits = 0

    def __next__(self):
        return next(self.messages)

    def commit(self):
        self.commits += 1


def test_run_consumes_and_commits_until_stopped(logger, producer, stats, queue_policy):
    consumer = FakeConsumer(
        [SimpleNamespace(topic="node-pings", partition=0, offset=i, value={"n": i}) for i in range(3)]
    )
    handler = FlakyHandler(0)
    worker = make_worker(handler, logger, producer, stats, queue_policy, consumer=consumer)
    remaining = iter([True] * 5 + [False])

    worker.run(lambda: next(remaining))

    assert handler.calls == 3
    assert consumer.commits == 3
    assert stats.total_jobs == 3
    assert stats.snapshot()["topics"]["node-pings"]["ok"] == 3


def test_job_outcomes_are_counted_per_topic(logger, producer, stats, queue_policy):
    worker = JobWorker(
        None,
        {"node-pings": FlakyHandler(0), "node-registrations": FlakyHandler(1)},
        logger,
        producer,
        stats,
        queue_policy,
    )

    worker.handle_message("node-pings", {})
    worker.handle_message("node-pings", {})
    worker.handle_message("node-registrations", {})
    worker.handle_message("other", {})

    topics = stats.snapshot()["topics"]
    assert topics["node-pings"]["ok"] == 2
    assert topics["node-registrations"]["retried"] == 1
    assert topics["other"]["dead_lettered"] == 1
    assert stats.total_jobs == 4


def test_statistics_reject_unknown_outcome(stats):
    with pytest.raises(ValueError):
        stats.record_job("node-pings", "lost", 0.1)


def test_registration_job_over_quota_is_parked(gateway, datastore, worker, producer):
    for i in range(5):
        datastore.add_node("u1", f"pk{i}")
    payload = {
        "nodeId": "00000000-0000-0000-0000-000000000001",
        "userId": "u1",
        "pubKey": "late",
        "ipAddress": None,
        "hardwareId": None,
        "timestamp": "2026-10-19T12:00:00+00:00",
    }

    assert worker.handle_message("node-registrations", payload) is False
    assert datastore.get_node(None, "u1", "late") is None
    assert producer.sent == [("problem.node-registrations", payload)]


def test_producer_resends_with_fixed_delay(logger, monkeypatch):
    created = {}

    def fake_producer(**kwargs):
        created.update(kwargs)
        return "producer"

    monkeypatch.setattr(JobQueue, "KafkaProducer", fake_producer)

    producer = JobQueue.JobQueue.create_producer(logger, QueuePolicy(attempts=3, backoff_sec=5))

    assert producer == "producer"
    assert created["retries"] == 3
    assert created["retry_backoff_ms"] == 5000
    assert created["acks"] == "all"
