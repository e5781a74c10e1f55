import json
from typing import Optional

from valkey import Valkey
from valkey.exceptions import ValkeyError

from config import NODE_CACHE_TTL_SEC, VALKEY_HOST, VALKEY_PASSWORD, VALKEY_PORT
from CustomLogger import CustomLogger
from model.Node import Node


class NodeCache:
    """Read-through cache of node lookups. Entries may be stale for up to `ttl_sec`."""

    def __init__(self, logger: CustomLogger, client: Optional[Valkey] = None, ttl_sec: int = NODE_CACHE_TTL_SEC):
        self.logger = logger
        self.ttl_sec = ttl_sec
        self.client = client if client is not None else Valkey(
            host=VALKEY_HOST,
            port=int(VALKEY_PORT),
            password=VALKEY_PASSWORD,
            db=0,
        )
        self.logger.info("Valkey client initialized")

    @staticmethod
    def get_node_key(user_id: str, pub_key: str) -> str:
        return f"node:{user_id}:{pub_key}"

    def get_node(self, user_id: str, pub_key: str) -> Optional[Node]:
        key = self.get_node_key(user_id, pub_key)
        try:
            raw = self.client.get(key)
        except ValkeyError as e:
            self.logger.warning(f"Valkey lookup of {key} failed, treating as miss: {e}")
            return None
        if raw is None:
            return None
        try:
            return Node.from_dict(json.loads(raw))
        except (ValueError, KeyError) as e:
            self.logger.warning(f"Dropping malformed cache entry {key}: {e}")
            self.invalidate(user_id, pub_key)
            return None

    def cache_node(self, node: Node) -> None:
        if node.user_id is None:
            return
        key = self.get_node_key(node.user_id, node.pub_key)
        try:
            self.client.set(key, json.dumps(node.to_dict()), ex=self.ttl_sec)
        except ValkeyError as e:
            self.logger.warning(f"Failed to cache node {key}: {e}")

    def invalidate(self, user_id: str, pub_key: str) -> None:
        try:
            self.client.delete(self.get_node_key(user_id, pub_key))
        except ValkeyError as e:
            self.logger.warning(f"Failed to invalidate cached node {pub_key} of user {user_id}: {e}")

    def close(self) -> None:
        self.client.close()
        self.logger.info("Valkey client closed.")
