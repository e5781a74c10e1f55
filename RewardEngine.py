from datetime import datetime, timedelta
from typing import Callable, List, Optional

from common import utc_now
from config import RewardPolicy
from CustomLogger import CustomLogger
from errors import operation_boundary
from model.NodeReward import NodeReward
from model.User import User
from PostgreSQLDataStore import PostgreSQLDataStore
from SessionTracker import SessionTracker


def compute_boost(user: Optional[User], policy: RewardPolicy) -> float:
    """1 + referral bonus + one bonus per designated social connection. Nodes without an owner get 1."""
    boost = 1.0
    if user is None:
        return boost
    if user.is_referred:
        boost += policy.boost_referred
    if user.has_social(policy.social_primary_name):
        boost += policy.boost_social_primary
    if user.has_social(policy.social_secondary_name):
        boost += policy.boost_social_secondary
    return round(boost, 4)


class RewardEngine:
    """
    Periodic reward tick:
    1. Reclaim sessions silent for longer than `dangling_session_stale_sec`
    2. Collect nodes with a session seen within `activity_window_sec` that is open or closed inside the window
    3. Look up each node owner's referral and social status and compute the boost
    4. Insert one reward per active node in a single statement
    The two thresholds are independent: reclamation is tighter than reward eligibility.
    """

    def __init__(
        self,
        datastore: PostgreSQLDataStore,
        session_tracker: SessionTracker,
        logger: CustomLogger,
        policy: RewardPolicy = RewardPolicy(),
        now: Callable[[], datetime] = utc_now,
    ):
        self.datastore = datastore
        self.session_tracker = session_tracker
        self.logger = logger
        self.policy = policy
        self.now = now

    @operation_boundary("Failed to process node rewards")
    def process_node_rewards(self) -> List[str]:
        """Run one tick and return the ids of the rewarded nodes. Failures are logged and re-raised typed."""
        self.session_tracker.reclaim_dangling_sessions(timedelta(seconds=self.policy.dangling_session_stale_sec))

        timestamp = self.now()
        window_start = timestamp - timedelta(seconds=self.policy.activity_window_sec)

        with self.datastore.transaction() as cur:
            node_ids = sorted(self.datastore.get_active_node_ids(cur, window_start))
            if not node_ids:
                self.logger.info("No active nodes to reward")
                return []

            owners = self.datastore.get_users_by_node_ids(cur, node_ids)
            rewards = [
                NodeReward.create(
                    node_id=node_id,
                    timestamp=timestamp,
                    base_reward=self.policy.base_reward,
                    boost=compute_boost(owners.get(node_id), self.policy),
                )
                for node_id in node_ids
            ]
            self.datastore.add_rewards(cur, rewards)

        total = sum(r.total_reward for r in rewards)
        self.logger.info(f"Rewarded {len(rewards)} active nodes, {total:.2f} units in total")
        return node_ids
