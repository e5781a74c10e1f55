import uuid
from collections import defaultdict
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Sequence

from psycopg2.extensions import cursor

from common import utc_now
from config import RewardPolicy
from CustomLogger import CustomLogger
from errors import NotFound, ValidationError, operation_boundary
from JobQueue import JobQueue
from model.Node import Node
from model.NodeSession import NodeSession
from PostgreSQLDataStore import PostgreSQLDataStore
from ValkeyClient import NodeCache


class SessionTracker:
    """
    Session lifecycle of a node: Closed -> Open (start_session) -> Closed (end_session or reclamation).

    Every session mutation for a node runs inside one transaction that first locks the node row,
    so "close whatever is open, then open a new session" is atomic per node. The partial unique
    index on open sessions backs this up at the storage level.
    """

    def __init__(
        self,
        datastore: PostgreSQLDataStore,
        queue: JobQueue,
        logger: CustomLogger,
        policy: RewardPolicy = RewardPolicy(),
        cache: Optional[NodeCache] = None,
        now: Callable[[], datetime] = utc_now,
    ):
        self.datastore = datastore
        self.queue = queue
        self.logger = logger
        self.policy = policy
        self.cache = cache
        self.now = now

    def _resolve_node(self, cur: cursor, user_id: str, pub_key: str) -> Node:
        if not user_id or not pub_key:
            raise ValidationError("userId and nodePubKey are required")
        node = self.datastore.get_node(cur, user_id, pub_key)
        if node is None:
            self.logger.debug(f"Node {pub_key} of user {user_id} not found")
            raise NotFound("Node not found")
        return node

    def _resolve_node_cached(self, user_id: str, pub_key: str) -> Node:
        if self.cache:
            cached = self.cache.get_node(user_id, pub_key)
            if cached:
                return cached
        with self.datastore.transaction() as cur:
            node = self._resolve_node(cur, user_id, pub_key)
        if self.cache:
            self.cache.cache_node(node)
        return node

    def _resolve_public_node(self, cur: cursor, pub_key: str) -> Node:
        if not pub_key:
            raise ValidationError("Public key is required")
        node = self.datastore.get_public_node(cur, pub_key)
        if node is None:
            self.logger.debug(f"Public node {pub_key} not found")
            raise NotFound("Node not found")
        return node

    def _open_session(self, cur: cursor, node: Node, timestamp: datetime) -> NodeSession:
        self.datastore.lock_node(cur, node.id)
        for session in self.datastore.close_open_sessions(cur, node.id, timestamp):
            self.logger.warning(f"Force-closed session {session.id} of node {node.pub_key} before starting a new one")
        return self.datastore.add_session(cur, str(uuid.uuid4()), node.id, timestamp)

    @operation_boundary("Failed to start node session")
    def start_session(self, user_id: str, pub_key: str) -> NodeSession:
        timestamp = self.now()
        with self.datastore.transaction() as cur:
            node = self._resolve_node(cur, user_id, pub_key)
            session = self._open_session(cur, node, timestamp)
        self.logger.info(f"Started session {session.id} for node {pub_key}")
        return session

    @operation_boundary("Failed to start node session")
    def start_public_session(self, pub_key: str) -> NodeSession:
        """Open a session for a node that has no owner yet. The caller has already verified the signature."""
        timestamp = self.now()
        with self.datastore.transaction() as cur:
            node = self._resolve_public_node(cur, pub_key)
            session = self._open_session(cur, node, timestamp)
        self.logger.info(f"Started session {session.id} for public node {pub_key}")
        return session

    @operation_boundary("Failed to end node session")
    def end_public_session(self, pub_key: str, session_id: str) -> Optional[NodeSession]:
        """
        Close one session of a public node. Returns None when that session is already closed;
        a session id that does not belong to the node is NotFound.
        """
        if not session_id:
            raise ValidationError("sessionId is required")
        timestamp = self.now()
        with self.datastore.transaction() as cur:
            node = self._resolve_public_node(cur, pub_key)
            self.datastore.lock_node(cur, node.id)
            existing = self.datastore.get_session(cur, session_id)
            if existing is None or existing.node_id != node.id:
                raise NotFound("Session not found")
            closed = self.datastore.close_session(cur, node.id, session_id, timestamp)

        if closed is None:
            self.logger.debug(f"Session {session_id} of public node {pub_key} already ended")
            return None
        self.logger.info(f"Ended session {session_id} for public node {pub_key}")
        return closed

    @operation_boundary("Failed to end node session")
    def end_session(self, user_id: str, pub_key: str) -> Optional[NodeSession]:
        """Close the node's open session. Returns None when nothing was open, so repeated calls are no-ops."""
        timestamp = self.now()
        with self.datastore.transaction() as cur:
            node = self._resolve_node(cur, user_id, pub_key)
            self.datastore.lock_node(cur, node.id)
            closed = self.datastore.close_open_sessions(cur, node.id, timestamp)

        if not closed:
            self.logger.debug(f"No open session for node {pub_key}; nothing to end")
            return None
        self.logger.info(f"Ended session {closed[0].id} for node {pub_key}")
        return closed[0]

    @operation_boundary("Failed to get node session")
    def get_active_session(self, user_id: str, pub_key: str) -> Optional[NodeSession]:
        with self.datastore.transaction() as cur:
            node = self._resolve_node(cur, user_id, pub_key)
            return self.datastore.get_open_session(cur, node.id)

    @operation_boundary("Failed to ping node session")
    def ping_session(self, user_id: str, pub_key: str, metadata: Optional[Dict[str, Any]] = None) -> None:
        """
        Queue a heartbeat for the node. The open session is not checked here: the write
        only touches a session that was already open at the ping time, so any other ping is
        recorded in the ping series and otherwise ignored.
        """
        node = self._resolve_node_cached(user_id, pub_key)
        payload = {
            "nodeId": node.id,
            "timestamp": self.now().isoformat(),
            "isB7SConnected": bool((metadata or {}).get("isB7SConnected", False)),
        }
        self.logger.trace(f"Ping from node {pub_key}: {payload}")
        self.queue.enqueue(self.queue.policy.pings_topic, payload, lambda: self.record_ping_in_db(payload))

    def record_ping_in_db(self, payload: Dict[str, Any]) -> Optional[NodeSession]:
        """Apply a queued heartbeat. Used by the queue worker and as the direct-write fallback."""
        node_id = payload["nodeId"]
        timestamp = datetime.fromisoformat(payload["timestamp"])
        with self.datastore.transaction() as cur:
            self.datastore.add_node_ping(cur, node_id, timestamp, bool(payload.get("isB7SConnected", False)))
            session = self.datastore.update_session_last_ping(
                cur, node_id, timestamp, self.policy.session_ping_log_enabled
            )
        if session is None:
            self.logger.debug(f"Ping for node {node_id} at {timestamp.isoformat()} matches no open session")
        return session

    @operation_boundary("Failed to reclaim dangling sessions")
    def reclaim_dangling_sessions(self, stale_after: timedelta) -> List[NodeSession]:
        """
        Close every open session whose last heartbeat (or start, if it was never pinged) is
        strictly older than now - stale_after. A session seen exactly at the cutoff stays open.
        """
        timestamp = self.now()
        cutoff = timestamp - stale_after
        with self.datastore.transaction() as cur:
            closed = self.datastore.close_dangling_sessions(cur, cutoff, timestamp)
        if closed:
            self.logger.info(f"Reclaimed {len(closed)} dangling sessions silent since before {cutoff.isoformat()}")
        return closed

    @operation_boundary("Failed to list node sessions")
    def get_recent_sessions(self, node_ids: Sequence[str], per_node: int = 10) -> Dict[str, List[NodeSession]]:
        result: Dict[str, List[NodeSession]] = defaultdict(list)
        if not node_ids:
            return result
        with self.datastore.transaction() as cur:
            for session in self.datastore.list_recent_sessions(cur, node_ids, per_node):
                result[session.node_id].append(session)
        return result
