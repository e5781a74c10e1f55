import os
from dataclasses import dataclass


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


# --- PostgreSQL ---
POSTGRE_SQL_HOST = os.getenv("POSTGRE_SQL_HOST", "localhost")
POSTGRE_SQL_PORT = int(os.getenv("POSTGRE_SQL_PORT", "5432"))
POSTGRE_SQL_DB = os.getenv("POSTGRE_SQL_DB", "node_gateway")
POSTGRE_SQL_USER = os.getenv("POSTGRE_SQL_USER", "node_gateway")
POSTGRE_SQL_PASSWORD = os.getenv("POSTGRE_SQL_PASSWORD", "")
POSTGRE_SQL_POOL_MIN = int(os.getenv("POSTGRE_SQL_POOL_MIN", "1"))
POSTGRE_SQL_POOL_MAX = int(os.getenv("POSTGRE_SQL_POOL_MAX", "10"))

# --- Valkey ---
VALKEY_HOST = os.getenv("VALKEY_HOST", "localhost")
VALKEY_PORT = os.getenv("VALKEY_PORT", "6379")
VALKEY_PASSWORD = os.getenv("VALKEY_PASSWORD")
NODE_CACHE_TTL_SEC = int(os.getenv("NODE_CACHE_TTL_SEC", "3600"))

# --- Kafka ---
KAFKA_SERVER_IP_ADDRESS = os.getenv("KAFKA_SERVER_IP_ADDRESS", "localhost")
KAFKA_SERVER_PORT = os.getenv("KAFKA_SERVER_PORT", "9092")
KAFKA_SECURITY_PROTOCOL = os.getenv("KAFKA_SECURITY_PROTOCOL", "PLAINTEXT")
KAFKA_CONSUMER_GROUP = os.getenv("KAFKA_CONSUMER_GROUP", "node-gateway-worker")
KAFKA_TOPIC_NODE_REGISTRATIONS = os.getenv("KAFKA_TOPIC_NODE_REGISTRATIONS", "node-registrations")
KAFKA_TOPIC_NODE_PINGS = os.getenv("KAFKA_TOPIC_NODE_PINGS", "node-pings")
KAFKA_PROBLEM_TOPIC_PREFIX = os.getenv("KAFKA_PROBLEM_TOPIC_PREFIX", "problem.")

# --- Queue retries ---
QUEUE_ATTEMPTS = int(os.getenv("QUEUE_ATTEMPTS", "3"))
QUEUE_BACKOFF_SEC = float(os.getenv("QUEUE_BACKOFF_SEC", "5"))
QUEUE_SEND_TIMEOUT_SEC = float(os.getenv("QUEUE_SEND_TIMEOUT_SEC", "5"))

# --- Reward and session policy ---
MAX_NODES_PER_USER = int(os.getenv("MAX_NODES_PER_USER", "5"))
REWARD_BASE_AMOUNT = float(os.getenv("REWARD_BASE_AMOUNT", "10"))
BOOST_REFERRED = float(os.getenv("BOOST_REFERRED", "0.10"))
BOOST_SOCIAL_PRIMARY = float(os.getenv("BOOST_SOCIAL_PRIMARY", "0.05"))
BOOST_SOCIAL_SECONDARY = float(os.getenv("BOOST_SOCIAL_SECONDARY", "0.05"))
SOCIAL_PRIMARY_NAME = os.getenv("SOCIAL_PRIMARY_NAME", "x")
SOCIAL_SECONDARY_NAME = os.getenv("SOCIAL_SECONDARY_NAME", "discord")
REFERRAL_SHARE = float(os.getenv("REFERRAL_SHARE", "0.10"))
ACTIVITY_WINDOW_SEC = int(os.getenv("ACTIVITY_WINDOW_SEC", "600"))
DANGLING_SESSION_STALE_SEC = int(os.getenv("DANGLING_SESSION_STALE_SEC", "120"))
REWARD_INTERVAL_SEC = int(os.getenv("REWARD_INTERVAL_SEC", "600"))
LEADERBOARD_SIZE = int(os.getenv("LEADERBOARD_SIZE", "100"))
EARNINGS_DAILY_DAYS = int(os.getenv("EARNINGS_DAILY_DAYS", "15"))
EARNINGS_MONTHLY_MONTHS = int(os.getenv("EARNINGS_MONTHLY_MONTHS", "12"))
SESSION_PING_LOG_ENABLED = _env_bool("SESSION_PING_LOG_ENABLED", False)

# --- Logging and statistics ---
LOG_DIR = os.getenv("LOG_DIR", "logs")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_INTERVAL = int(os.getenv("LOG_INTERVAL", "500"))


@dataclass(frozen=True)
class RewardPolicy:
    max_nodes_per_user: int = MAX_NODES_PER_USER
    base_reward: float = REWARD_BASE_AMOUNT
    boost_referred: float = BOOST_REFERRED
    boost_social_primary: float = BOOST_SOCIAL_PRIMARY
    boost_social_secondary: float = BOOST_SOCIAL_SECONDARY
    social_primary_name: str = SOCIAL_PRIMARY_NAME
    social_secondary_name: str = SOCIAL_SECONDARY_NAME
    referral_share: float = REFERRAL_SHARE
    activity_window_sec: int = ACTIVITY_WINDOW_SEC
    dangling_session_stale_sec: int = DANGLING_SESSION_STALE_SEC
    leaderboard_size: int = LEADERBOARD_SIZE
    earnings_daily_days: int = EARNINGS_DAILY_DAYS
    earnings_monthly_months: int = EARNINGS_MONTHLY_MONTHS
    session_ping_log_enabled: bool = SESSION_PING_LOG_ENABLED
    node_cache_ttl_sec: int = NODE_CACHE_TTL_SEC


@dataclass(frozen=True)
class QueuePolicy:
    attempts: int = QUEUE_ATTEMPTS
    backoff_sec: float = QUEUE_BACKOFF_SEC
    send_timeout_sec: float = QUEUE_SEND_TIMEOUT_SEC
    registrations_topic: str = KAFKA_TOPIC_NODE_REGISTRATIONS
    pings_topic: str = KAFKA_TOPIC_NODE_PINGS
    problem_topic_prefix: str = KAFKA_PROBLEM_TOPIC_PREFIX
