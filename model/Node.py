from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional


@dataclass(frozen=True)
class Node:
    id: str
    pub_key: str  # immutable once set
    user_id: Optional[str]  # None until the node is linked to a user
    created_at: datetime
    updated_at: datetime
    ip_address: Optional[str] = None
    hardware_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "pubKey": self.pub_key,
            "userId": self.user_id,
            "ipAddress": self.ip_address,
            "hardwareId": self.hardware_id,
            "createdAt": self.created_at.isoformat(),
            "updatedAt": self.updated_at.isoformat(),
        }

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "Node":
        return Node(
            id=data["id"],
            pub_key=data["pubKey"],
            user_id=data.get("userId"),
            ip_address=data.get("ipAddress"),
            hardware_id=data.get("hardwareId"),
            created_at=datetime.fromisoformat(data["createdAt"]),
            updated_at=datetime.fromisoformat(data["updatedAt"]),
        )
