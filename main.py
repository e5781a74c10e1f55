import signal
from types import FrameType
from typing import Optional

from config import REWARD_INTERVAL_SEC, QueuePolicy
from CustomKafkaConsumer import CustomKafkaConsumer, JobWorker
from CustomLogger import CustomLogger
from Gateway import Gateway
from RewardScheduler import RewardScheduler
from StatisticsTracker import StatisticsTracker


def shutdown_signal_handler(logger: CustomLogger, signum: Optional[int] = None, frame: Optional[FrameType] = None) -> None:
    """Just signal intent to shutdown."""
    global running
    logger.info("Shutdown signal received...")
    running = False


def cleanup(logger: CustomLogger) -> None:
    """Close all resources AFTER the worker loop has stopped."""
    global consumer, gateway, scheduler, cleanup_done
    if cleanup_done:
        return
    logger.info("Shutting down node-gateway...")

    if scheduler:
        scheduler.stop()

    if consumer:
        try:
            consumer.close()
            logger.info("Kafka consumer closed.")
        except Exception as e:
            logger.warning(f"Failed to close Kafka consumer: {e}")

    if gateway:
        try:
            gateway.close()
        except Exception as e:
            logger.warning(f"Failed to close gateway clients: {e}")

    cleanup_done = True
    logger.info("Shutdown complete.")


def main() -> None:
    global consumer, gateway, scheduler

    logger = CustomLogger.create()
    queue_policy = QueuePolicy()

    signal.signal(signal.SIGINT, lambda s, f: shutdown_signal_handler(logger, s, f))
    signal.signal(signal.SIGTERM, lambda s, f: shutdown_signal_handler(logger, s, f))

    try:
        gateway = Gateway.create(logger, queue_policy)
        scheduler = RewardScheduler(gateway.rewards, logger, REWARD_INTERVAL_SEC)
        consumer = CustomKafkaConsumer.create([queue_policy.registrations_topic, queue_policy.pings_topic], logger)
        worker = JobWorker(
            consumer,
            gateway.job_handlers(),
            logger,
            gateway.queue.producer,
            StatisticsTracker(logger),
            queue_policy,
        )

        logger.info("Starting node-gateway... Press Ctrl+C to exit.")
        scheduler.start()
        worker.run(lambda: running)
    except Exception as e:
        logger.exception(f"Error occured in main loop of node-gateway: {e}")
    finally:
        cleanup(logger)


# Global variables
running: bool = True
cleanup_done: bool = False
consumer: Optional[CustomKafkaConsumer] = None
gateway: Optional[Gateway] = None
scheduler: Optional[RewardScheduler] = None

if __name__ == "__main__":
    main()
