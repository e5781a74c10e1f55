from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, Optional


@dataclass(frozen=True)
class User:
    id: str  # wallet address
    ref_code: Optional[str] = None
    ref_by: Optional[str] = None  # ref_code of the referring user
    connected_socials: FrozenSet[str] = field(default_factory=frozenset)

    @property
    def is_referred(self) -> bool:
        return bool(self.ref_by)

    def has_social(self, name: str) -> bool:
        return name in self.connected_socials

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "refCode": self.ref_code,
            "refBy": self.ref_by,
            "connectedSocials": sorted(self.connected_socials),
        }
