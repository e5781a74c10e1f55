import json
import os
from typing import Any, Callable, Dict, Optional

from kafka import KafkaProducer
from kafka.errors import KafkaError

from config import KAFKA_SECURITY_PROTOCOL, KAFKA_SERVER_IP_ADDRESS, KAFKA_SERVER_PORT, QueuePolicy
from CustomLogger import CustomLogger


def kafka_client_options() -> Dict[str, Any]:
    """Connection settings shared by producer and consumer."""
    options: Dict[str, Any] = {
        "bootstrap_servers": [f"{KAFKA_SERVER_IP_ADDRESS}:{KAFKA_SERVER_PORT}"],
        "security_protocol": KAFKA_SECURITY_PROTOCOL,
    }
    if KAFKA_SECURITY_PROTOCOL == "SASL_SSL":
        options.update(
            ssl_cafile="./certs/kafka.truststore.pem",
            ssl_certfile="./certs/kafka.keystore.pem",
            ssl_keyfile="./certs/kafka.keystore.pem",
            ssl_password=os.getenv("SSL_PASSWORD"),
            sasl_mechanism="SCRAM-SHA-512",
            sasl_plain_username=os.getenv("SASL_PLAIN_USERNAME"),
            sasl_plain_password=os.getenv("SASL_PLAIN_PASSWORD"),
            ssl_check_hostname=False,
        )
    return options


class JobQueue:
    """
    Producer side of the durable write queue.

    Jobs are JSON messages on a Kafka topic. When the broker cannot take a job the
    caller's direct writer runs synchronously instead, so nothing is dropped.
    """

    def __init__(self, logger: CustomLogger, producer: Optional[KafkaProducer], policy: QueuePolicy = QueuePolicy()):
        self.logger = logger
        self.producer = producer
        self.policy = policy

    @staticmethod
    def create_producer(logger: CustomLogger, policy: QueuePolicy = QueuePolicy()) -> Optional[KafkaProducer]:
        """Create the Kafka producer, or None when the broker is unreachable at startup."""
        try:
            producer = KafkaProducer(
                client_id="node-gateway",
                acks="all",
                retries=policy.attempts,
                # fixed delay between broker resends; exponential job backoff happens in JobWorker
                retry_backoff_ms=int(policy.backoff_sec * 1000),
                value_serializer=lambda v: json.dumps(v).encode("utf-8"),
                **kafka_client_options(),
            )
            logger.info("Initialized KafkaProducer")
            return producer
        except KafkaError as e:
            logger.error(f"Failed to create Kafka producer, jobs will be written directly: {e}")
            return None

    def enqueue(self, topic: str, payload: Dict[str, Any], fallback: Callable[[], Any]) -> bool:
        """
        Publish `payload` to `topic` and wait for the broker to acknowledge it.

        Returns True when the job was queued. Otherwise `fallback` is executed and False is
        returned; exceptions raised by `fallback` propagate to the caller.
        """
        if self.producer is None:
            self.logger.warning(f"Queue unavailable, writing {topic} job directly")
            fallback()
            return False

        try:
            self.producer.send(topic, value=payload).get(timeout=self.policy.send_timeout_sec)
            self.logger.debug(f"Queued job on {topic}: {payload}")
            return True
        except KafkaError as e:
            self.logger.error(f"Failed to add job to {topic}, falling back to direct database write: {e}")
            fallback()
            return False

    def close(self) -> None:
        if self.producer:
            self.producer.flush(timeout=5)
            self.producer.close(timeout=5)
            self.logger.info("Kafka producer closed.")
