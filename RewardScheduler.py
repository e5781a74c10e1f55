import threading
import time
from typing import Optional

from config import REWARD_INTERVAL_SEC
from CustomLogger import CustomLogger
from errors import GatewayError
from RewardEngine import RewardEngine


class RewardScheduler:
    """Runs the reward tick on a fixed wall-clock interval in a background thread."""

    def __init__(self, engine: RewardEngine, logger: CustomLogger, interval_sec: float = REWARD_INTERVAL_SEC):
        self.engine = engine
        self.logger = logger
        self.interval_sec = interval_sec
        self.failed_ticks = 0
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def tick(self) -> bool:
        """Run one tick. A failed tick is counted and logged, never raised."""
        start_time = time.time()
        try:
            rewarded = self.engine.process_node_rewards()
        except GatewayError as e:
            self.failed_ticks += 1
            self.logger.error(f"Reward tick failed ({self.failed_ticks} failures so far), retrying next interval: {e}")
            return False
        self.logger.info(f"Reward tick rewarded {len(rewarded)} nodes in {time.time() - start_time:.2f}s")
        return True

    def _run(self) -> None:
        while not self._stop_event.is_set():
            self.tick()
            self._stop_event.wait(self.interval_sec)

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, name="reward-scheduler", daemon=True)
        self._thread.start()
        self.logger.info(f"Reward scheduler started, interval {self.interval_sec}s")

    def stop(self, timeout: Optional[float] = 10) -> None:
        self._stop_event.set()
        if self._thread:
            self._thread.join(timeout)
            self._thread = None
        self.logger.info("Reward scheduler stopped.")
