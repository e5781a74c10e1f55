from dataclasses import dataclass
from typing import Any, Dict

from model.User import User


@dataclass(frozen=True)
class EarningsEntry:
    date: str  # %Y-%m-%d for daily buckets, %Y-%m for monthly buckets
    base_reward: float
    total_reward: float

    def to_dict(self) -> Dict[str, Any]:
        return {"date": self.date, "baseReward": self.base_reward, "totalReward": self.total_reward}


@dataclass(frozen=True)
class UserRewardTotals:
    user_id: str
    total_reward: float
    today_reward: float


@dataclass(frozen=True)
class LeaderboardEntry:
    address: str
    total_time: float
    today_time: float
    rank: int
    is_current_user: bool

    def to_dict(self) -> Dict[str, Any]:
        return {
            "address": self.address,
            "totalTime": self.total_time,
            "todayTime": self.today_time,
            "rank": self.rank,
            "isCurrentUser": self.is_current_user,
        }


@dataclass(frozen=True)
class ReferralEntry:
    user: User
    total_time: float

    def to_dict(self) -> Dict[str, Any]:
        return {"user": self.user.to_dict(), "totalTime": self.total_time}
