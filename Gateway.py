from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from common import utc_now
from config import QueuePolicy, RewardPolicy
from CustomKafkaConsumer import JobHandler
from CustomLogger import CustomLogger
from EarningsAggregator import EarningsAggregator
from JobQueue import JobQueue
from NodeRegistry import NodeRegistry
from PostgreSQLDataStore import PostgreSQLDataStore
from RewardEngine import RewardEngine
from SessionTracker import SessionTracker
from ValkeyClient import NodeCache


class Gateway:
    """
    Composition root of the node gateway. Owns the datastore, queue and cache clients and
    hands them to the components; the HTTP layer and the scheduler only talk to this class.
    Results are plain dicts ready for JSON encoding.
    """

    def __init__(
        self,
        datastore: PostgreSQLDataStore,
        queue: JobQueue,
        logger: CustomLogger,
        cache: Optional[NodeCache] = None,
        policy: RewardPolicy = RewardPolicy(),
        now: Callable[[], datetime] = utc_now,
    ):
        self.datastore = datastore
        self.queue = queue
        self.cache = cache
        self.logger = logger
        self.nodes = NodeRegistry(datastore, queue, logger, policy, cache, now)
        self.sessions = SessionTracker(datastore, queue, logger, policy, cache, now)
        self.rewards = RewardEngine(datastore, self.sessions, logger, policy, now)
        self.earnings = EarningsAggregator(datastore, logger, policy, now)

    @staticmethod
    def create(logger: CustomLogger, queue_policy: QueuePolicy = QueuePolicy()) -> "Gateway":
        datastore = PostgreSQLDataStore(logger)
        queue = JobQueue(logger, JobQueue.create_producer(logger, queue_policy), queue_policy)
        cache = NodeCache(logger)
        return Gateway(datastore, queue, logger, cache)

    def job_handlers(self) -> Dict[str, JobHandler]:
        return {
            self.queue.policy.registrations_topic: self.nodes.register_node_in_db,
            self.queue.policy.pings_topic: self.sessions.record_ping_in_db,
        }

    def close(self) -> None:
        self.queue.close()
        if self.cache:
            self.cache.close()
        self.datastore.close()

    # --- Nodes ---
    def register_node(self, user_id: str, pub_key: str, data: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        return self.nodes.register_node(user_id, pub_key, data).to_dict()

    def register_public_node(self, pub_key: str, data: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        return self.nodes.register_public_node(pub_key, data).to_dict()

    def link_node(self, user_id: str, pub_key: str) -> Dict[str, Any]:
        return self.nodes.link_node(user_id, pub_key).to_dict()

    def get_node(self, user_id: str, pub_key: str) -> Dict[str, Any]:
        return self.nodes.get_node(user_id, pub_key).to_dict()

    def list_nodes(self, user_id: str, page: int = 1, limit: int = 10) -> List[Dict[str, Any]]:
        nodes = self.nodes.list_nodes(user_id, page, limit)
        sessions = self.sessions.get_recent_sessions([node.id for node in nodes])
        return [
            {**node.to_dict(), "sessions": [s.to_dict() for s in sessions.get(node.id, [])]}
            for node in nodes
        ]

    # --- Sessions ---
    def start_session(self, user_id: str, pub_key: str) -> Dict[str, Any]:
        return self.sessions.start_session(user_id, pub_key).to_dict()

    def end_session(self, user_id: str, pub_key: str) -> Optional[Dict[str, Any]]:
        session = self.sessions.end_session(user_id, pub_key)
        return session.to_dict() if session else None

    def start_public_session(self, pub_key: str) -> Dict[str, Any]:
        return self.sessions.start_public_session(pub_key).to_dict()

    def end_public_session(self, pub_key: str, session_id: str) -> Optional[Dict[str, Any]]:
        session = self.sessions.end_public_session(pub_key, session_id)
        return session.to_dict() if session else None

    def ping_session(self, user_id: str, pub_key: str, metadata: Optional[Dict[str, Any]] = None) -> None:
        self.sessions.ping_session(user_id, pub_key, metadata)

    # --- Rewards ---
    def process_node_rewards(self) -> List[str]:
        return self.rewards.process_node_rewards()

    def get_node_earnings(self, user_id: str, pub_key: str, period: str = "daily") -> List[Dict[str, Any]]:
        return [entry.to_dict() for entry in self.earnings.get_node_earnings(user_id, pub_key, period)]

    def get_user_earnings(self, user_id: str, period: str = "daily") -> List[Dict[str, Any]]:
        return [entry.to_dict() for entry in self.earnings.get_user_earnings(user_id, period)]

    def get_user_overview(self, user_id: str) -> Dict[str, float]:
        return self.earnings.get_user_overview(user_id)

    def get_user_referrals(self, user_id: str) -> Dict[str, Any]:
        return self.earnings.get_user_referrals(user_id)

    def get_user_leaderboard(self, user_id: str) -> Dict[str, Any]:
        return self.earnings.get_user_leaderboard(user_id)
