from datetime import datetime, timezone
from logging import Logger
from typing import Any, Callable, Dict, Optional, TypeVar

import backoff
from kafka import KafkaProducer

T = TypeVar("T")


def utc_now() -> datetime:
    return datetime.now(tz=timezone.utc)


def start_of_day(moment: datetime) -> datetime:
    return moment.astimezone(timezone.utc).replace(hour=0, minute=0, second=0, microsecond=0)


def start_of_month(moment: datetime) -> datetime:
    return start_of_day(moment).replace(day=1)


def run_with_retries(
    func: Callable[[], T],
    attempts: int,
    backoff_sec: float,
    logger: Logger,
    description: str,
    giveup: Callable[[Exception], bool] = lambda e: False,
) -> T:
    """
    Run `func` up to `attempts` times, waiting backoff_sec, 2*backoff_sec, ... between tries.
    The last exception is re-raised once every attempt failed.
    Exceptions for which `giveup` returns True are re-raised without further attempts.
    """

    def log_backoff(details: Dict[str, Any]) -> None:
        logger.warning(
            f"{description} failed on attempt {details['tries']}/{attempts}: {details.get('exception')} "
            f"- retrying in {details['wait']:.1f}s"
        )

    def log_giveup(details: Dict[str, Any]) -> None:
        logger.error(f"{description} failed after {details['tries']} attempts: {details.get('exception')}")

    retrying = backoff.on_exception(
        backoff.expo,
        Exception,
        max_tries=max(1, attempts),
        factor=backoff_sec,
        jitter=None,
        giveup=giveup,
        on_backoff=log_backoff,
        on_giveup=log_giveup,
    )(func)
    return retrying()


def handle_job_problem(
    payload: Dict[str, Any], topic: str, logger: Logger, producer: Optional[KafkaProducer]
) -> None:
    """Publish a job that could not be processed to a problem topic for later inspection."""
    logger.error(f"Handling error: Publishing job {payload} to {topic}")
    if producer is None:
        logger.critical(f"No producer available, job for {topic} is only kept in this log: {payload}")
        return
    producer.send(topic, value=payload)
