from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Sequence

from common import start_of_day, start_of_month, utc_now
from config import RewardPolicy
from CustomLogger import CustomLogger
from errors import NotFound, ValidationError, operation_boundary
from model.Earnings import EarningsEntry, LeaderboardEntry, ReferralEntry
from PostgreSQLDataStore import PostgreSQLDataStore

DATE_FORMATS = {"daily": "%Y-%m-%d", "monthly": "%Y-%m"}


def _shift_month(moment: datetime, months: int) -> datetime:
    index = moment.year * 12 + (moment.month - 1) + months
    return moment.replace(year=index // 12, month=index % 12 + 1, day=1)


def period_start(today: datetime, period: str, count: int) -> datetime:
    """UTC start of the oldest bucket of a `count`-long series ending with the bucket holding `today`."""
    if period == "daily":
        return start_of_day(today) - timedelta(days=count - 1)
    return _shift_month(start_of_month(today), -(count - 1))


def period_buckets(today: datetime, period: str, count: int) -> List[str]:
    """Formatted labels of every bucket from the oldest to the one holding `today`, inclusive."""
    first = period_start(today, period, count)
    date_format = DATE_FORMATS[period]
    if period == "daily":
        return [(first + timedelta(days=i)).strftime(date_format) for i in range(count)]
    return [_shift_month(first, i).strftime(date_format) for i in range(count)]


def fill_missing_periods(entries: Sequence[EarningsEntry], buckets: Sequence[str]) -> List[EarningsEntry]:
    """Dense series over `buckets`: aggregated entries where present, zero entries everywhere else."""
    by_date = {entry.date: entry for entry in entries}
    return [by_date.get(bucket, EarningsEntry(date=bucket, base_reward=0.0, total_reward=0.0)) for bucket in buckets]


class EarningsAggregator:
    """Read-only rollups over node rewards. Days and months are UTC calendar buckets."""

    def __init__(
        self,
        datastore: PostgreSQLDataStore,
        logger: CustomLogger,
        policy: RewardPolicy = RewardPolicy(),
        now: Callable[[], datetime] = utc_now,
    ):
        self.datastore = datastore
        self.logger = logger
        self.policy = policy
        self.now = now

    def _bucket_count(self, period: str) -> int:
        if period == "daily":
            return self.policy.earnings_daily_days
        if period == "monthly":
            return self.policy.earnings_monthly_months
        raise ValidationError("period must be 'daily' or 'monthly'")

    def _earnings(self, node_ids: Sequence[str], period: str) -> List[EarningsEntry]:
        count = self._bucket_count(period)
        today = self.now()
        buckets = period_buckets(today, period, count)
        entries: List[EarningsEntry] = []
        if node_ids:
            with self.datastore.transaction() as cur:
                entries = self.datastore.sum_rewards_by_period(cur, node_ids, period_start(today, period, count), period)
        return fill_missing_periods(entries, buckets)

    @operation_boundary("Failed to get node earnings")
    def get_node_earnings(self, user_id: str, pub_key: str, period: str = "daily") -> List[EarningsEntry]:
        self._bucket_count(period)
        with self.datastore.transaction() as cur:
            node = self.datastore.get_node(cur, user_id, pub_key)
        if node is None:
            raise NotFound("Node not found")
        return self._earnings([node.id], period)

    @operation_boundary("Failed to get all user nodes earnings")
    def get_user_earnings(self, user_id: str, period: str = "daily") -> List[EarningsEntry]:
        self._bucket_count(period)
        with self.datastore.transaction() as cur:
            node_ids = self.datastore.get_node_ids_by_user(cur, user_id)
        return self._earnings(node_ids, period)

    @operation_boundary("Failed to get user overview")
    def get_user_overview(self, user_id: str) -> Dict[str, float]:
        today = start_of_day(self.now())
        with self.datastore.transaction() as cur:
            node_ids = self.datastore.get_node_ids_by_user(cur, user_id)
            today_base, today_total = self.datastore.sum_rewards(cur, node_ids, today) if node_ids else (0.0, 0.0)
            all_base, all_total = self.datastore.sum_rewards(cur, node_ids) if node_ids else (0.0, 0.0)

            referred_ids = self._referred_user_ids(cur, user_id)
            today_referrals = self._referral_share(cur, referred_ids, today)
            all_referrals = self._referral_share(cur, referred_ids, None)

        return {
            "todayBaseReward": today_base,
            "todayTotalReward": today_total,
            "todayReferralsReward": today_referrals,
            "allTimeBaseReward": all_base,
            "allTimeTotalReward": all_total,
            "allTimeReferralsReward": all_referrals,
        }

    def _referred_user_ids(self, cur: Any, user_id: str) -> List[str]:
        user = self.datastore.get_user(cur, user_id)
        if user is None or not user.ref_code:
            return []
        return [referred.id for referred in self.datastore.get_users_referred_by(cur, user.ref_code)]

    def _referral_share(self, cur: Any, referred_ids: Sequence[str], since: Optional[datetime]) -> float:
        if not referred_ids:
            return 0.0
        base_by_user = self.datastore.sum_base_rewards_by_user(cur, referred_ids, since)
        return sum(base_by_user.values()) * self.policy.referral_share

    @operation_boundary("Failed to get user referrals")
    def get_user_referrals(self, user_id: str) -> Dict[str, Any]:
        today = start_of_day(self.now())
        with self.datastore.transaction() as cur:
            user = self.datastore.get_user(cur, user_id)
            if user is None:
                raise NotFound("User not found")

            referred = self.datastore.get_users_referred_by(cur, user.ref_code) if user.ref_code else []
            referred_ids = [r.id for r in referred]
            all_time = self.datastore.sum_base_rewards_by_user(cur, referred_ids) if referred_ids else {}
            today_time = self.datastore.sum_base_rewards_by_user(cur, referred_ids, today) if referred_ids else {}

        referrals = [ReferralEntry(user=r, total_time=all_time.get(r.id, 0.0)) for r in referred]
        return {
            "isReferred": user.is_referred,
            "refCode": user.ref_code,
            "referrals": [entry.to_dict() for entry in referrals],
            "todayReferralTime": sum(today_time.values()) * self.policy.referral_share,
            "totalReferralTime": sum(all_time.values()) * self.policy.referral_share,
        }

    @operation_boundary("Failed to get leaderboard")
    def get_user_leaderboard(self, user_id: str) -> Dict[str, Any]:
        """Top users by total reward, plus the caller's own row when it falls outside the top."""
        today = start_of_day(self.now())
        with self.datastore.transaction() as cur:
            totals = self.datastore.get_user_reward_totals(cur, today)

        entries = [
            LeaderboardEntry(
                address=row.user_id,
                total_time=row.total_reward,
                today_time=row.today_reward,
                rank=index + 1,
                is_current_user=row.user_id == user_id,
            )
            for index, row in enumerate(totals)
        ]
        own: Optional[LeaderboardEntry] = next((e for e in entries if e.is_current_user), None)

        leaderboard = entries[: self.policy.leaderboard_size]
        if own is not None and own.rank > self.policy.leaderboard_size:
            leaderboard.append(own)

        return {
            "rank": own.rank if own else None,
            "totalUsers": len(entries),
            "leaderboard": [entry.to_dict() for entry in leaderboard],
        }
