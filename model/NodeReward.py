from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict


@dataclass(frozen=True)
class NodeReward:
    node_id: str
    timestamp: datetime
    boost: float
    base_reward: float
    total_reward: float  # always base_reward * boost

    @staticmethod
    def create(node_id: str, timestamp: datetime, base_reward: float, boost: float) -> "NodeReward":
        return NodeReward(
            node_id=node_id,
            timestamp=timestamp,
            boost=boost,
            base_reward=base_reward,
            total_reward=base_reward * boost,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "nodeId": self.node_id,
            "timestamp": self.timestamp.isoformat(),
            "boost": self.boost,
            "baseReward": self.base_reward,
            "totalReward": self.total_reward,
        }
