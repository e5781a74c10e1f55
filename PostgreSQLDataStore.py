from contextlib import contextmanager
from datetime import datetime
from logging import Logger
from typing import Dict, Iterator, List, Optional, Sequence, Tuple

from psycopg2 import pool
from psycopg2.extensions import cursor
from psycopg2.extras import execute_values

from config import (
    POSTGRE_SQL_DB,
    POSTGRE_SQL_HOST,
    POSTGRE_SQL_PASSWORD,
    POSTGRE_SQL_POOL_MAX,
    POSTGRE_SQL_POOL_MIN,
    POSTGRE_SQL_PORT,
    POSTGRE_SQL_USER,
)
from model.Earnings import EarningsEntry, UserRewardTotals
from model.Node import Node
from model.NodeReward import NodeReward
from model.NodeSession import NodeSession
from model.User import User

NODE_COLUMNS = "node_id, pub_key, user_id, ip_address, hardware_id, created_at, updated_at"
SESSION_COLUMNS = "session_id, node_id, start_at, end_at, last_ping_at, pings"
USER_COLUMNS = "user_id, ref_code, ref_by, connected_socials"

PERIOD_FORMATS = {"daily": "YYYY-MM-DD", "monthly": "YYYY-MM"}


def _row_to_node(row: tuple) -> Node:
    return Node(
        id=str(row[0]),
        pub_key=row[1],
        user_id=row[2],
        ip_address=row[3],
        hardware_id=row[4],
        created_at=row[5],
        updated_at=row[6],
    )


def _row_to_session(row: tuple) -> NodeSession:
    pings = tuple(row[5]) if row[5] is not None else None
    return NodeSession(
        id=str(row[0]),
        node_id=str(row[1]),
        start_at=row[2],
        end_at=row[3],
        last_ping_at=row[4],
        pings=pings,
    )


def _row_to_user(row: tuple) -> User:
    return User(id=row[0], ref_code=row[1], ref_by=row[2], connected_socials=frozenset(row[3] or ()))


class PostgreSQLDataStore:
    def __init__(self, logger: Logger):
        self.logger = logger
        try:
            self.pool = pool.ThreadedConnectionPool(
                POSTGRE_SQL_POOL_MIN,
                POSTGRE_SQL_POOL_MAX,
                dbname=POSTGRE_SQL_DB,
                user=POSTGRE_SQL_USER,
                password=POSTGRE_SQL_PASSWORD,
                host=POSTGRE_SQL_HOST,
                port=POSTGRE_SQL_PORT,
            )
            self.logger.info(f"PostgreSQL connection pool initialized. Connected to database {POSTGRE_SQL_DB}")
        except Exception:
            self.logger.exception("Failed to initialize PostgreSQL connection pool.")
            raise

    def close(self) -> None:
        self.pool.closeall()
        self.logger.info("PostgreSQL connection pool closed.")

    @contextmanager
    def transaction(self) -> Iterator[cursor]:
        conn = self.pool.getconn()
        cur = conn.cursor()
        try:
            yield cur
            conn.commit()
            self.logger.debug("Sucessfully committed transaction.")
        except Exception as e:
            conn.rollback()
            self.logger.error(f"Transaction failed and rolled back: {e}")
            raise
        finally:
            cur.close()
            self.pool.putconn(conn)

    # --- USERS ---
    def get_user(self, cur: cursor, user_id: str) -> Optional[User]:
        cur.execute(f"SELECT {USER_COLUMNS} FROM users WHERE user_id = %s", (user_id,))
        row = cur.fetchone()
        return _row_to_user(row) if row else None

    def get_users_referred_by(self, cur: cursor, ref_code: str) -> List[User]:
        cur.execute(f"SELECT {USER_COLUMNS} FROM users WHERE ref_by = %s ORDER BY user_id", (ref_code,))
        return [_row_to_user(row) for row in cur.fetchall()]

    def get_users_by_node_ids(self, cur: cursor, node_ids: Sequence[str]) -> Dict[str, User]:
        cur.execute(
            """
            SELECT n.node_id, u.user_id, u.ref_code, u.ref_by, u.connected_socials
            FROM nodes n
            JOIN users u ON u.user_id = n.user_id
            WHERE n.node_id = ANY(%s::uuid[])
            """,
            (list(node_ids),),
        )
        return {str(row[0]): _row_to_user(row[1:]) for row in cur.fetchall()}

    # --- NODES ---
    def get_node(self, cur: cursor, user_id: str, pub_key: str) -> Optional[Node]:
        cur.execute(f"SELECT {NODE_COLUMNS} FROM nodes WHERE pub_key = %s AND user_id = %s", (pub_key, user_id))
        row = cur.fetchone()
        return _row_to_node(row) if row else None

    def get_public_node(self, cur: cursor, pub_key: str) -> Optional[Node]:
        cur.execute(f"SELECT {NODE_COLUMNS} FROM nodes WHERE pub_key = %s AND user_id IS NULL", (pub_key,))
        row = cur.fetchone()
        return _row_to_node(row) if row else None

    def lock_node(self, cur: cursor, node_id: str) -> None:
        """Serialize session mutations of one node until the surrounding transaction ends."""
        cur.execute("SELECT node_id FROM nodes WHERE node_id = %s FOR UPDATE", (node_id,))

    def lock_user_nodes(self, cur: cursor, user_id: str) -> None:
        """Serialize quota decisions of one user until the surrounding transaction ends."""
        cur.execute("SELECT pg_advisory_xact_lock(hashtext(%s))", (user_id,))

    def count_nodes_by_user(self, cur: cursor, user_id: str) -> int:
        cur.execute("SELECT COUNT(*) FROM nodes WHERE user_id = %s", (user_id,))
        return int(cur.fetchone()[0])

    def list_nodes_by_user(self, cur: cursor, user_id: str, limit: int, offset: int) -> List[Node]:
        cur.execute(
            f"""
            SELECT {NODE_COLUMNS} FROM nodes
            WHERE user_id = %s
            ORDER BY updated_at DESC
            LIMIT %s OFFSET %s
            """,
            (user_id, limit, offset),
        )
        return [_row_to_node(row) for row in cur.fetchall()]

    def get_node_ids_by_user(self, cur: cursor, user_id: str) -> List[str]:
        cur.execute("SELECT node_id FROM nodes WHERE user_id = %s", (user_id,))
        return [str(row[0]) for row in cur.fetchall()]

    def upsert_node(
        self,
        cur: cursor,
        node_id: str,
        user_id: str,
        pub_key: str,
        ip_address: Optional[str],
        hardware_id: Optional[str],
        timestamp: datetime,
    ) -> Node:
        cur.execute(
            f"""
            INSERT INTO nodes (node_id, pub_key, user_id, ip_address, hardware_id, created_at, updated_at)
            VALUES (%s, %s, %s, %s, %s, %s, %s)
            ON CONFLICT (pub_key, user_id) WHERE user_id IS NOT NULL DO UPDATE
            SET ip_address = COALESCE(EXCLUDED.ip_address, nodes.ip_address),
                hardware_id = COALESCE(EXCLUDED.hardware_id, nodes.hardware_id),
                updated_at = EXCLUDED.updated_at
            RETURNING {NODE_COLUMNS}
            """,
            (node_id, pub_key, user_id, ip_address, hardware_id, timestamp, timestamp),
        )
        return _row_to_node(cur.fetchone())

    def add_public_node(
        self,
        cur: cursor,
        node_id: str,
        pub_key: str,
        ip_address: Optional[str],
        hardware_id: Optional[str],
        timestamp: datetime,
    ) -> Node:
        cur.execute(
            f"""
            INSERT INTO nodes (node_id, pub_key, user_id, ip_address, hardware_id, created_at, updated_at)
            VALUES (%s, %s, NULL, %s, %s, %s, %s)
            RETURNING {NODE_COLUMNS}
            """,
            (node_id, pub_key, ip_address, hardware_id, timestamp, timestamp),
        )
        return _row_to_node(cur.fetchone())

    def link_node(self, cur: cursor, pub_key: str, user_id: str, timestamp: datetime) -> Optional[Node]:
        cur.execute(
            f"""
            UPDATE nodes
            SET user_id = %s, updated_at = %s
            WHERE pub_key = %s AND user_id IS NULL
            RETURNING {NODE_COLUMNS}
            """,
            (user_id, timestamp, pub_key),
        )
        row = cur.fetchone()
        return _row_to_node(row) if row else None

    # --- SESSIONS ---
    def get_open_session(self, cur: cursor, node_id: str) -> Optional[NodeSession]:
        cur.execute(
            f"SELECT {SESSION_COLUMNS} FROM node_sessions WHERE node_id = %s AND end_at IS NULL",
            (node_id,),
        )
        row = cur.fetchone()
        return _row_to_session(row) if row else None

    def get_session(self, cur: cursor, session_id: str) -> Optional[NodeSession]:
        cur.execute(f"SELECT {SESSION_COLUMNS} FROM node_sessions WHERE session_id = %s", (session_id,))
        row = cur.fetchone()
        return _row_to_session(row) if row else None

    def list_recent_sessions(self, cur: cursor, node_ids: Sequence[str], per_node: int) -> List[NodeSession]:
        cur.execute(
            f"""
            SELECT {SESSION_COLUMNS} FROM (
                SELECT *, row_number() OVER (PARTITION BY node_id ORDER BY start_at DESC) AS rn
                FROM node_sessions
                WHERE node_id = ANY(%s::uuid[])
            ) ranked
            WHERE rn <= %s
            ORDER BY node_id, start_at DESC
            """,
            (list(node_ids), per_node),
        )
        return [_row_to_session(row) for row in cur.fetchall()]

    def add_session(self, cur: cursor, session_id: str, node_id: str, start_at: datetime) -> NodeSession:
        cur.execute(
            f"""
            INSERT INTO node_sessions (session_id, node_id, start_at)
            VALUES (%s, %s, %s)
            RETURNING {SESSION_COLUMNS}
            """,
            (session_id, node_id, start_at),
        )
        return _row_to_session(cur.fetchone())

    def close_open_sessions(self, cur: cursor, node_id: str, end_at: datetime) -> List[NodeSession]:
        cur.execute(
            f"""
            UPDATE node_sessions
            SET end_at = %s
            WHERE node_id = %s AND end_at IS NULL
            RETURNING {SESSION_COLUMNS}
            """,
            (end_at, node_id),
        )
        return [_row_to_session(row) for row in cur.fetchall()]

    def close_dangling_sessions(self, cur: cursor, cutoff: datetime, end_at: datetime) -> List[NodeSession]:
        cur.execute(
            f"""
            UPDATE node_sessions
            SET end_at = %s
            WHERE end_at IS NULL
            AND (
                (last_ping_at IS NOT NULL AND last_ping_at < %s)
                OR (last_ping_at IS NULL AND start_at < %s)
            )
            RETURNING {SESSION_COLUMNS}
            """,
            (end_at, cutoff, cutoff),
        )
        return [_row_to_session(row) for row in cur.fetchall()]

    def close_session(self, cur: cursor, node_id: str, session_id: str, end_at: datetime) -> Optional[NodeSession]:
        cur.execute(
            f"""
            UPDATE node_sessions
            SET end_at = %s
            WHERE session_id = %s AND node_id = %s AND end_at IS NULL
            RETURNING {SESSION_COLUMNS}
            """,
            (end_at, session_id, node_id),
        )
        row = cur.fetchone()
        return _row_to_session(row) if row else None

    def update_session_last_ping(
        self, cur: cursor, node_id: str, timestamp: datetime, append_to_log: bool
    ) -> Optional[NodeSession]:
        """
        Apply a heartbeat to the open session that was already running at `timestamp`.
        last_ping_at never moves backwards, so late or redelivered pings cannot age a live session.
        """
        pings_clause = ", pings = array_append(pings, %s)" if append_to_log else ""
        params: tuple = (timestamp, timestamp)
        if append_to_log:
            params += (timestamp,)
        params += (node_id, timestamp)
        cur.execute(
            f"""
            UPDATE node_sessions
            SET last_ping_at = GREATEST(COALESCE(last_ping_at, %s), %s){pings_clause}
            WHERE node_id = %s AND end_at IS NULL AND start_at <= %s
            RETURNING {SESSION_COLUMNS}
            """,
            params,
        )
        row = cur.fetchone()
        return _row_to_session(row) if row else None

    def get_active_node_ids(self, cur: cursor, window_start: datetime) -> List[str]:
        cur.execute(
            """
            SELECT DISTINCT node_id FROM node_sessions
            WHERE COALESCE(last_ping_at, start_at) >= %s
            AND (end_at IS NULL OR end_at >= %s)
            """,
            (window_start, window_start),
        )
        return [str(row[0]) for row in cur.fetchall()]

    # --- PINGS ---
    def add_node_ping(self, cur: cursor, node_id: str, timestamp: datetime, is_b7s_connected: bool) -> None:
        cur.execute(
            "INSERT INTO node_pings (node_id, timestamp, is_b7s_connected) VALUES (%s, %s, %s)",
            (node_id, timestamp, is_b7s_connected),
        )

    # --- REWARDS ---
    def add_rewards(self, cur: cursor, rewards: Sequence[NodeReward]) -> None:
        if not rewards:
            return
        execute_values(
            cur,
            "INSERT INTO node_rewards (node_id, timestamp, boost, base_reward, total_reward) VALUES %s",
            [(r.node_id, r.timestamp, r.boost, r.base_reward, r.total_reward) for r in rewards],
        )

    def sum_rewards(
        self, cur: cursor, node_ids: Sequence[str], since: Optional[datetime] = None
    ) -> Tuple[float, float]:
        cur.execute(
            """
            SELECT COALESCE(SUM(base_reward), 0), COALESCE(SUM(total_reward), 0)
            FROM node_rewards
            WHERE node_id = ANY(%s::uuid[])
            AND (%s::timestamptz IS NULL OR timestamp >= %s::timestamptz)
            """,
            (list(node_ids), since, since),
        )
        base, total = cur.fetchone()
        return float(base), float(total)

    def sum_rewards_by_period(
        self, cur: cursor, node_ids: Sequence[str], since: datetime, period: str
    ) -> List[EarningsEntry]:
        cur.execute(
            """
            SELECT to_char(timestamp AT TIME ZONE 'UTC', %s) AS bucket,
                   SUM(base_reward), SUM(total_reward)
            FROM node_rewards
            WHERE node_id = ANY(%s::uuid[]) AND timestamp >= %s
            GROUP BY bucket
            ORDER BY bucket
            """,
            (PERIOD_FORMATS[period], list(node_ids), since),
        )
        return [EarningsEntry(date=row[0], base_reward=float(row[1]), total_reward=float(row[2])) for row in cur.fetchall()]

    def sum_base_rewards_by_user(
        self, cur: cursor, user_ids: Sequence[str], since: Optional[datetime] = None
    ) -> Dict[str, float]:
        cur.execute(
            """
            SELECT n.user_id, COALESCE(SUM(r.base_reward), 0)
            FROM nodes n
            JOIN node_rewards r ON r.node_id = n.node_id
            WHERE n.user_id = ANY(%s)
            AND (%s::timestamptz IS NULL OR r.timestamp >= %s::timestamptz)
            GROUP BY n.user_id
            """,
            (list(user_ids), since, since),
        )
        return {row[0]: float(row[1]) for row in cur.fetchall()}

    def get_user_reward_totals(self, cur: cursor, today_start: datetime) -> List[UserRewardTotals]:
        cur.execute(
            """
            SELECT u.user_id,
                   COALESCE(SUM(r.total_reward), 0) AS total,
                   COALESCE(SUM(r.total_reward) FILTER (WHERE r.timestamp >= %s), 0) AS today
            FROM users u
            LEFT JOIN nodes n ON n.user_id = u.user_id
            LEFT JOIN node_rewards r ON r.node_id = n.node_id
            GROUP BY u.user_id
            ORDER BY total DESC, u.user_id
            """,
            (today_start,),
        )
        return [
            UserRewardTotals(user_id=row[0], total_reward=float(row[1]), today_reward=float(row[2]))
            for row in cur.fetchall()
        ]
