import uuid
from dataclasses import replace
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from common import utc_now
from config import RewardPolicy
from CustomLogger import CustomLogger
from errors import NotFound, QuotaExceeded, ValidationError, operation_boundary
from JobQueue import JobQueue
from model.Node import Node
from PostgreSQLDataStore import PostgreSQLDataStore
from ValkeyClient import NodeCache

MAX_PAGE_SIZE = 100


def _require(value: Optional[str], name: str) -> str:
    if not value or not str(value).strip():
        raise ValidationError(f"{name} is required")
    return str(value).strip()


class NodeRegistry:
    """Owns node records: user-scoped registration, public nodes, linking and lookups."""

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

    @operation_boundary("Failed to register node")
    def register_node(self, user_id: str, pub_key: str, data: Optional[Dict[str, Any]] = None) -> Node:
        """
        Workflow node registration:
        1. Lock the user's quota and look up the node by (pub_key, user_id)
        2. Unknown node and the user already owns `max_nodes_per_user` nodes -> QuotaExceeded
        3. Unknown node -> insert it in the same transaction, so the slot is taken before returning
        4. Known node -> queue the attribute update on the registrations topic; if the queue
           refuses it, upsert directly
        """
        user_id = _require(user_id, "userId")
        pub_key = _require(pub_key, "nodePubKey")
        data = data or {}
        timestamp = self.now()

        with self.datastore.transaction() as cur:
            self.datastore.lock_user_nodes(cur, user_id)
            existing: Optional[Node] = self.datastore.get_node(cur, user_id, pub_key)
            if existing is None:
                self._check_quota(cur, user_id, pub_key)
                node = self.datastore.upsert_node(
                    cur,
                    str(uuid.uuid4()),
                    user_id,
                    pub_key,
                    data.get("ipAddress"),
                    data.get("hardwareId"),
                    timestamp,
                )

        if existing is None:
            self.logger.info(f"Registered node {pub_key} ({node.id}) for user {user_id}")
            return node

        payload = {
            "nodeId": existing.id,
            "userId": user_id,
            "pubKey": pub_key,
            "ipAddress": data.get("ipAddress"),
            "hardwareId": data.get("hardwareId"),
            "timestamp": timestamp.isoformat(),
        }
        self.queue.enqueue(
            self.queue.policy.registrations_topic, payload, lambda: self.register_node_in_db(payload)
        )
        if self.cache:
            self.cache.invalidate(user_id, pub_key)
        return replace(
            existing,
            ip_address=payload["ipAddress"] or existing.ip_address,
            hardware_id=payload["hardwareId"] or existing.hardware_id,
            updated_at=timestamp,
        )

    def _check_quota(self, cur: Any, user_id: str, pub_key: str) -> None:
        node_count = self.datastore.count_nodes_by_user(cur, user_id)
        if node_count >= self.policy.max_nodes_per_user:
            self.logger.warning(f"User {user_id} already owns {node_count} nodes; refusing node {pub_key}")
            raise QuotaExceeded(f"A user may register at most {self.policy.max_nodes_per_user} nodes")

    def register_node_in_db(self, payload: Dict[str, Any]) -> Node:
        """Upsert a queued registration. Used by the queue worker and as the direct-write fallback."""
        user_id = payload["userId"]
        pub_key = payload["pubKey"]
        with self.datastore.transaction() as cur:
            self.datastore.lock_user_nodes(cur, user_id)
            if self.datastore.get_node(cur, user_id, pub_key) is None:
                self._check_quota(cur, user_id, pub_key)
            node = self.datastore.upsert_node(
                cur,
                payload["nodeId"],
                user_id,
                pub_key,
                payload.get("ipAddress"),
                payload.get("hardwareId"),
                datetime.fromisoformat(payload["timestamp"]),
            )
        self.logger.debug(f"Stored node {node.pub_key} ({node.id}) for user {user_id}")
        return node

    @operation_boundary("Failed to get node")
    def get_node(self, user_id: str, pub_key: str) -> Node:
        with self.datastore.transaction() as cur:
            node = self.datastore.get_node(cur, _require(user_id, "userId"), _require(pub_key, "nodePubKey"))
        if node is None:
            raise NotFound("Node not found")
        return node

    @operation_boundary("Failed to list nodes")
    def list_nodes(self, user_id: str, page: int = 1, limit: int = 10) -> List[Node]:
        if page < 1:
            raise ValidationError("page must be at least 1")
        if limit < 1 or limit > MAX_PAGE_SIZE:
            raise ValidationError(f"limit must be between 1 and {MAX_PAGE_SIZE}")
        with self.datastore.transaction() as cur:
            return self.datastore.list_nodes_by_user(cur, _require(user_id, "userId"), limit, (page - 1) * limit)

    @operation_boundary("Failed to register node")
    def register_public_node(self, pub_key: str, data: Optional[Dict[str, Any]] = None) -> Node:
        """Create a node that is not yet owned by any user. Registering a known key returns it unchanged."""
        pub_key = _require(pub_key, "Public key")
        data = data or {}
        with self.datastore.transaction() as cur:
            existing = self.datastore.get_public_node(cur, pub_key)
            if existing:
                return existing
            node = self.datastore.add_public_node(
                cur, str(uuid.uuid4()), pub_key, data.get("ipAddress"), data.get("hardwareId"), self.now()
            )
        self.logger.info(f"Registered public node {pub_key} ({node.id})")
        return node

    @operation_boundary("Failed to get node")
    def get_public_node(self, pub_key: str) -> Node:
        with self.datastore.transaction() as cur:
            node = self.datastore.get_public_node(cur, _require(pub_key, "Public key"))
        if node is None:
            raise NotFound("Node not found")
        return node

    @operation_boundary("Failed to link node")
    def link_node(self, user_id: str, pub_key: str) -> Node:
        """Attach a public node to a user. The caller has already verified the node's signature."""
        user_id = _require(user_id, "userId")
        pub_key = _require(pub_key, "nodePubKey")
        with self.datastore.transaction() as cur:
            self.datastore.lock_user_nodes(cur, user_id)
            owned = self.datastore.get_node(cur, user_id, pub_key)
            if owned:
                return owned
            if self.datastore.get_public_node(cur, pub_key) is None:
                raise NotFound("Node not found")
            self._check_quota(cur, user_id, pub_key)
            node = self.datastore.link_node(cur, pub_key, user_id, self.now())
        if node is None:
            raise NotFound("Node not found")
        self.logger.info(f"Linked node {pub_key} to user {user_id}")
        return node
