"""
Pytest fixtures and in-memory stand-ins for Postgres, Valkey and Kafka.

The fake datastore implements the same methods as PostgreSQLDataStore with the same
semantics, so the components can be exercised without any backend running.
"""

import logging
import uuid
from collections import Counter, defaultdict
from contextlib import contextmanager
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple

import psycopg2
import pytest
from kafka.errors import KafkaTimeoutError

from config import QueuePolicy, RewardPolicy
from CustomKafkaConsumer import JobWorker
from CustomLogger import CustomLogger
from Gateway import Gateway
from JobQueue import JobQueue
from model.Earnings import EarningsEntry, UserRewardTotals
from model.Node import Node
from model.NodeReward import NodeReward
from model.NodeSession import NodeSession
from model.User import User
from StatisticsTracker import StatisticsTracker
from ValkeyClient import NodeCache

START = datetime(2026, 10, 19, 12, 0, 0, tzinfo=timezone.utc)
DATE_FORMATS = {"daily": "%Y-%m-%d", "monthly": "%Y-%m"}


class FakeClock:
    def __init__(self, start: datetime = START):
        self.current = start

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs: float) -> datetime:
        self.current = self.current + timedelta(**kwargs)
        return self.current


class FakeDataStore:
    def __init__(self) -> None:
        self.users: Dict[str, User] = {}
        self.nodes: Dict[str, Node] = {}
        self.sessions: Dict[str, NodeSession] = {}
        self.pings: List[Tuple[str, datetime, bool]] = []
        self.rewards: List[NodeReward] = []
        self.locked_nodes: List[str] = []
        self.locked_users: List[str] = []
        self.calls: Counter = Counter()
        self.fail_with: Optional[Exception] = None

    @contextmanager
    def transaction(self) -> Iterator[None]:
        if self.fail_with is not None:
            raise self.fail_with
        yield None

    def close(self) -> None:
        pass

    # --- helpers for arranging tests ---
    def add_user(self, user_id: str, ref_code: Optional[str] = None, ref_by: Optional[str] = None, socials: Sequence[str] = ()) -> User:
        user = User(id=user_id, ref_code=ref_code, ref_by=ref_by, connected_socials=frozenset(socials))
        self.users[user_id] = user
        return user

    def add_node(self, user_id: str, pub_key: str, timestamp: datetime = START) -> Node:
        return self.upsert_node(None, str(uuid.uuid4()), user_id, pub_key, None, None, timestamp)

    def add_reward(self, node_id: str, timestamp: datetime, base_reward: float = 10.0, boost: float = 1.0) -> NodeReward:
        reward = NodeReward.create(node_id, timestamp, base_reward, boost)
        self.rewards.append(reward)
        return reward

    def sessions_for(self, node_id: str) -> List[NodeSession]:
        return sorted((s for s in self.sessions.values() if s.node_id == node_id), key=lambda s: s.start_at)

    def open_sessions_for(self, node_id: str) -> List[NodeSession]:
        return [s for s in self.sessions_for(node_id) if s.is_open]

    # --- users ---
    def get_user(self, cur: Any, user_id: str) -> Optional[User]:
        return self.users.get(user_id)

    def get_users_referred_by(self, cur: Any, ref_code: str) -> List[User]:
        return sorted((u for u in self.users.values() if u.ref_by == ref_code), key=lambda u: u.id)

    def get_users_by_node_ids(self, cur: Any, node_ids: Sequence[str]) -> Dict[str, User]:
        result = {}
        for node_id in node_ids:
            node = self.nodes.get(node_id)
            if node and node.user_id in self.users:
                result[node_id] = self.users[node.user_id]
        return result

    # --- nodes ---
    def get_node(self, cur: Any, user_id: str, pub_key: str) -> Optional[Node]:
        self.calls["get_node"] += 1
        return next((n for n in self.nodes.values() if n.pub_key == pub_key and n.user_id == user_id), None)

    def get_public_node(self, cur: Any, pub_key: str) -> Optional[Node]:
        return next((n for n in self.nodes.values() if n.pub_key == pub_key and n.user_id is None), None)

    def lock_node(self, cur: Any, node_id: str) -> None:
        self.locked_nodes.append(node_id)

    def lock_user_nodes(self, cur: Any, user_id: str) -> None:
        self.locked_users.append(user_id)

    def count_nodes_by_user(self, cur: Any, user_id: str) -> int:
        return sum(1 for n in self.nodes.values() if n.user_id == user_id)

    def list_nodes_by_user(self, cur: Any, user_id: str, limit: int, offset: int) -> List[Node]:
        owned = sorted((n for n in self.nodes.values() if n.user_id == user_id), key=lambda n: n.updated_at, reverse=True)
        return owned[offset : offset + limit]

    def get_node_ids_by_user(self, cur: Any, user_id: str) -> List[str]:
        return [n.id for n in self.nodes.values() if n.user_id == user_id]

    def upsert_node(self, cur: Any, node_id: str, user_id: str, pub_key: str, ip_address: Optional[str], hardware_id: Optional[str], timestamp: datetime) -> Node:
        existing = self.get_node(cur, user_id, pub_key)
        if existing:
            node = replace(
                existing,
                ip_address=ip_address or existing.ip_address,
                hardware_id=hardware_id or existing.hardware_id,
                updated_at=timestamp,
            )
        else:
            node = Node(node_id, pub_key, user_id, timestamp, timestamp, ip_address, hardware_id)
        self.nodes[node.id] = node
        return node

    def add_public_node(self, cur: Any, node_id: str, pub_key: str, ip_address: Optional[str], hardware_id: Optional[str], timestamp: datetime) -> Node:
        if self.get_public_node(cur, pub_key):
            raise psycopg2.IntegrityError("duplicate public node")
        node = Node(node_id, pub_key, None, timestamp, timestamp, ip_address, hardware_id)
        self.nodes[node_id] = node
        return node

    def link_node(self, cur: Any, pub_key: str, user_id: str, timestamp: datetime) -> Optional[Node]:
        node = self.get_public_node(cur, pub_key)
        if node is None:
            return None
        linked = replace(node, user_id=user_id, updated_at=timestamp)
        self.nodes[linked.id] = linked
        return linked

    # --- sessions ---
    def get_open_session(self, cur: Any, node_id: str) -> Optional[NodeSession]:
        return next(iter(self.open_sessions_for(node_id)), None)

    def get_session(self, cur: Any, session_id: str) -> Optional[NodeSession]:
        return self.sessions.get(session_id)

    def list_recent_sessions(self, cur: Any, node_ids: Sequence[str], per_node: int) -> List[NodeSession]:
        result: List[NodeSession] = []
        for node_id in sorted(node_ids):
            result.extend(list(reversed(self.sessions_for(node_id)))[:per_node])
        return result

    def add_session(self, cur: Any, session_id: str, node_id: str, start_at: datetime) -> NodeSession:
        if self.open_sessions_for(node_id):
            raise psycopg2.IntegrityError("node already has an open session")
        session = NodeSession(id=session_id, node_id=node_id, start_at=start_at)
        self.sessions[session_id] = session
        return session

    def close_open_sessions(self, cur: Any, node_id: str, end_at: datetime) -> List[NodeSession]:
        closed = []
        for session in self.open_sessions_for(node_id):
            closed.append(replace(session, end_at=end_at))
            self.sessions[session.id] = closed[-1]
        return closed

    def close_dangling_sessions(self, cur: Any, cutoff: datetime, end_at: datetime) -> List[NodeSession]:
        closed = []
        for session in list(self.sessions.values()):
            if session.is_open and session.last_seen < cutoff:
                closed.append(replace(session, end_at=end_at))
                self.sessions[session.id] = closed[-1]
        return closed

    def close_session(self, cur: Any, node_id: str, session_id: str, end_at: datetime) -> Optional[NodeSession]:
        session = self.sessions.get(session_id)
        if session is None or session.node_id != node_id or not session.is_open:
            return None
        closed = replace(session, end_at=end_at)
        self.sessions[session_id] = closed
        return closed

    def update_session_last_ping(self, cur: Any, node_id: str, timestamp: datetime, append_to_log: bool) -> Optional[NodeSession]:
        session = self.get_open_session(cur, node_id)
        if session is None or session.start_at > timestamp:
            return None
        pings = session.pings
        if append_to_log:
            pings = (pings or ()) + (timestamp,)
        last_ping_at = max(session.last_ping_at or timestamp, timestamp)
        updated = replace(session, last_ping_at=last_ping_at, pings=pings)
        self.sessions[session.id] = updated
        return updated

    def get_active_node_ids(self, cur: Any, window_start: datetime) -> List[str]:
        return list(
            {
                s.node_id
                for s in self.sessions.values()
                if s.last_seen >= window_start and (s.end_at is None or s.end_at >= window_start)
            }
        )

    # --- pings and rewards ---
    def add_node_ping(self, cur: Any, node_id: str, timestamp: datetime, is_b7s_connected: bool) -> None:
        self.pings.append((node_id, timestamp, is_b7s_connected))

    def add_rewards(self, cur: Any, rewards: Sequence[NodeReward]) -> None:
        self.rewards.extend(rewards)

    def _rewards_for(self, node_ids: Sequence[str], since: Optional[datetime]) -> List[NodeReward]:
        return [r for r in self.rewards if r.node_id in node_ids and (since is None or r.timestamp >= since)]

    def sum_rewards(self, cur: Any, node_ids: Sequence[str], since: Optional[datetime] = None) -> Tuple[float, float]:
        rewards = self._rewards_for(node_ids, since)
        return sum(r.base_reward for r in rewards), sum(r.total_reward for r in rewards)

    def sum_rewards_by_period(self, cur: Any, node_ids: Sequence[str], since: datetime, period: str) -> List[EarningsEntry]:
        base: Dict[str, float] = defaultdict(float)
        total: Dict[str, float] = defaultdict(float)
        for reward in self._rewards_for(node_ids, since):
            bucket = reward.timestamp.astimezone(timezone.utc).strftime(DATE_FORMATS[period])
            base[bucket] += reward.base_reward
            total[bucket] += reward.total_reward
        return [EarningsEntry(date=b, base_reward=base[b], total_reward=total[b]) for b in sorted(base)]

    def sum_base_rewards_by_user(self, cur: Any, user_ids: Sequence[str], since: Optional[datetime] = None) -> Dict[str, float]:
        result: Dict[str, float] = {}
        for user_id in user_ids:
            rewards = self._rewards_for(self.get_node_ids_by_user(cur, user_id), since)
            if rewards:
                result[user_id] = sum(r.base_reward for r in rewards)
        return result

    def get_user_reward_totals(self, cur: Any, today_start: datetime) -> List[UserRewardTotals]:
        rows = []
        for user_id in self.users:
            node_ids = self.get_node_ids_by_user(cur, user_id)
            total = sum(r.total_reward for r in self._rewards_for(node_ids, None))
            today = sum(r.total_reward for r in self._rewards_for(node_ids, today_start))
            rows.append(UserRewardTotals(user_id=user_id, total_reward=total, today_reward=today))
        return sorted(rows, key=lambda row: (-row.total_reward, row.user_id))


class FakeFuture:
    def __init__(self, error: Optional[Exception]):
        self.error = error

    def get(self, timeout: Optional[float] = None) -> None:
        if self.error is not None:
            raise self.error


class FakeProducer:
    def __init__(self) -> None:
        self.sent: List[Tuple[str, Dict[str, Any]]] = []
        self.fail = False

    def send(self, topic: str, value: Dict[str, Any]) -> FakeFuture:
        if self.fail:
            return FakeFuture(KafkaTimeoutError("broker unavailable"))
        self.sent.append((topic, value))
        return FakeFuture(None)

    def pop_all(self) -> List[Tuple[str, Dict[str, Any]]]:
        messages, self.sent = self.sent, []
        return messages

    def flush(self, timeout: Optional[float] = None) -> None:
        pass

    def close(self, timeout: Optional[float] = None) -> None:
        pass


class FakeValkey:
    def __init__(self) -> None:
        self.store: Dict[str, Any] = {}
        self.ttls: Dict[str, int] = {}

    def get(self, key: str) -> Any:
        return self.store.get(key)

    def set(self, key: str, value: Any, ex: Optional[int] = None) -> None:
        self.store[key] = value
        self.ttls[key] = ex

    def delete(self, key: str) -> None:
        self.store.pop(key, None)

    def close(self) -> None:
        pass


@pytest.fixture
def logger() -> CustomLogger:
    return CustomLogger(logging.getLogger("node_gateway.tests"))


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def datastore() -> FakeDataStore:
    return FakeDataStore()


@pytest.fixture
def producer() -> FakeProducer:
    return FakeProducer()


@pytest.fixture
def queue_policy() -> QueuePolicy:
    return QueuePolicy(backoff_sec=0)


@pytest.fixture
def policy() -> RewardPolicy:
    return RewardPolicy()


@pytest.fixture
def queue(logger: CustomLogger, producer: FakeProducer, queue_policy: QueuePolicy) -> JobQueue:
    return JobQueue(logger, producer, queue_policy)


@pytest.fixture
def cache(logger: CustomLogger) -> NodeCache:
    return NodeCache(logger, FakeValkey(), ttl_sec=3600)


@pytest.fixture
def gateway(datastore, queue, logger, cache, policy, clock) -> Gateway:
    return Gateway(datastore, queue, logger, cache, policy, clock)


@pytest.fixture
def worker(gateway, logger, producer, queue_policy) -> JobWorker:
    return JobWorker(None, gateway.job_handlers(), logger, producer, StatisticsTracker(logger), queue_policy)


@pytest.fixture
def drain(producer: FakeProducer, worker: JobWorker):
    """Deliver every queued job to the worker, like the consumer loop would."""

    def _drain() -> int:
        messages = [m for m in producer.pop_all() if not m[0].startswith("problem.")]
        for topic, payload in messages:
            worker.handle_message(topic, payload)
        return len(messages)

    return _drain
