import json
import time
from typing import Any, Callable, Dict, Iterator, List, Optional

from kafka import KafkaConsumer, KafkaProducer

from common import handle_job_problem, run_with_retries
from config import KAFKA_CONSUMER_GROUP, QueuePolicy
from CustomLogger import CustomLogger
from errors import GatewayError, UpstreamUnavailable
from JobQueue import kafka_client_options
from StatisticsTracker import StatisticsTracker

JobHandler = Callable[[Dict[str, Any]], Any]


def is_permanent_failure(error: Exception) -> bool:
    """Business-rule rejections will not succeed on retry; unavailable backends might."""
    return isinstance(error, GatewayError) and not isinstance(error, UpstreamUnavailable)


class CustomKafkaConsumer:
    def __init__(self, consumer: KafkaConsumer, topics: List[str]):
        self.consumer = consumer
        self.topics = topics

    def __iter__(self) -> Iterator[Any]:
        return iter(self.consumer)

    def __next__(self) -> Any:
        return next(self.consumer)

    def commit(self) -> None:
        self.consumer.commit()

    def close(self) -> None:
        """Commit offsets and close the underlying Kafka consumer."""
        self.consumer.commit()
        self.consumer.close()

    @staticmethod
    def create(topics: List[str], logger: CustomLogger) -> "CustomKafkaConsumer":
        """Create a consumer for the job topics. Iteration stops every second so the caller can check for shutdown."""
        consumer = KafkaConsumer(
            *topics,
            client_id="node-gateway-worker",
            auto_offset_reset="earliest",
            enable_auto_commit=False,
            group_id=KAFKA_CONSUMER_GROUP,
            consumer_timeout_ms=1000,
            value_deserializer=lambda v: json.loads(v.decode("utf-8")),
            **kafka_client_options(),
        )
        logger.info(f"CustomKafkaConsumer initialized. Consuming on topics {', '.join(topics)}")
        return CustomKafkaConsumer(consumer, topics)


class JobWorker:
    """
    Consumer side of the write queue: at-least-once processing of registration and ping jobs.
    Offsets are committed manually after each job, so a crash mid-job redelivers it.

    Each job is retried `policy.attempts` times with exponential backoff. Jobs that still fail,
    or that are rejected by a business rule, are published to `problem.<topic>`.
    """

    def __init__(
        self,
        consumer: Any,
        handlers: Dict[str, JobHandler],
        logger: CustomLogger,
        producer: Optional[KafkaProducer],
        stats_tracker: StatisticsTracker,
        policy: QueuePolicy = QueuePolicy(),
    ):
        self.consumer = consumer
        self.handlers = handlers
        self.logger = logger
        self.producer = producer
        self.stats_tracker = stats_tracker
        self.policy = policy

    def handle_message(self, topic: str, payload: Dict[str, Any]) -> bool:
        """Process one job. Returns False when the job ended up on a problem topic."""
        start_time = time.time()
        handler = self.handlers.get(topic)
        if handler is None:
            self.logger.error(f"No handler for topic {topic}")
            handle_job_problem(payload, f"{self.policy.problem_topic_prefix}unknown_topic", self.logger, self.producer)
            self.stats_tracker.record_job(topic, "dead_lettered", time.time() - start_time)
            return False

        attempts = 0

        def attempt() -> Any:
            nonlocal attempts
            attempts += 1
            return handler(payload)

        try:
            run_with_retries(
                attempt,
                self.policy.attempts,
                self.policy.backoff_sec,
                self.logger,
                f"Job on {topic}",
                giveup=is_permanent_failure,
            )
        except Exception as e:
            self.logger.error(f"Giving up on job from {topic} after {attempts} attempts: {e}")
            handle_job_problem(payload, f"{self.policy.problem_topic_prefix}{topic}", self.logger, self.producer)
            self.stats_tracker.record_job(topic, "dead_lettered", time.time() - start_time)
            return False

        self.stats_tracker.record_job(topic, "ok" if attempts == 1 else "retried", time.time() - start_time)
        return True

    def run(self, should_continue: Callable[[], bool]) -> None:
        """Consume until `should_continue` says stop. The offset is committed only once a job is handled."""
        self.logger.info("Starting queue worker...")
        while should_continue():
            try:
                message = next(self.consumer)
            except StopIteration:
                continue
            self.logger.trace(
                f"Received message from topic={message.topic}, partition={message.partition}, offset={message.offset}"
            )
            self.handle_message(message.topic, message.value)
            self.consumer.commit()
        self.stats_tracker.log_summary()
        self.logger.info("Queue worker stopped.")
