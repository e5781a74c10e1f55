from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional, Tuple


@dataclass(frozen=True)
class NodeSession:
    id: str
    node_id: str
    start_at: datetime
    end_at: Optional[datetime] = None  # None while the session is open
    last_ping_at: Optional[datetime] = None
    pings: Optional[Tuple[datetime, ...]] = None  # legacy embedded heartbeat log

    @property
    def is_open(self) -> bool:
        return self.end_at is None

    @property
    def last_seen(self) -> datetime:
        return self.last_ping_at or self.start_at

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {
            "id": self.id,
            "nodeId": self.node_id,
            "startAt": self.start_at.isoformat(),
            "endAt": self.end_at.isoformat() if self.end_at else None,
            "lastPingAt": self.last_ping_at.isoformat() if self.last_ping_at else None,
        }
        if self.pings is not None:
            result["pings"] = [{"timestamp": ts.isoformat()} for ts in self.pings]
        return result
