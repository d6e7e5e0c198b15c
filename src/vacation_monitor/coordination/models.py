"""
Data models for the distributed lock.
"""

from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Any, Dict, Generic, Optional, TypeVar

T = TypeVar("T")


@dataclass(frozen=True)
class LockRecord:
    """Stored state of a named leadership lock."""
    lock_name: str
    holder_id: str
    acquired_at: datetime
    expires_at: datetime
    renewed_at: datetime

    @classmethod
    def fresh(cls, lock_name: str, holder_id: str, now: datetime, duration_seconds: float) -> 'LockRecord':
        """Create a record for a holder taking the lock at ``now``."""
        return cls(
            lock_name=lock_name,
            holder_id=holder_id,
            acquired_at=now,
            expires_at=now + timedelta(seconds=duration_seconds),
            renewed_at=now
        )

    def renewed(self, now: datetime, duration_seconds: float) -> 'LockRecord':
        """Copy of this record with its expiry pushed out from ``now``."""
        return replace(self, expires_at=now + timedelta(seconds=duration_seconds), renewed_at=now)

    def is_live(self, now: datetime) -> bool:
        return self.expires_at > now

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at < now

    def to_document(self) -> Dict[str, Any]:
        """Convert to the camelCase document shape stored in the lock collection."""
        return {
            'lockName': self.lock_name,
            'holderId': self.holder_id,
            'acquiredAt': self.acquired_at,
            'expiresAt': self.expires_at,
            'renewedAt': self.renewed_at
        }

    @classmethod
    def from_document(cls, doc: Dict[str, Any]) -> 'LockRecord':
        """Create a LockRecord from a stored document."""
        return cls(
            lock_name=doc['lockName'],
            holder_id=doc['holderId'],
            acquired_at=doc['acquiredAt'],
            expires_at=doc['expiresAt'],
            renewed_at=doc.get('renewedAt') or doc['acquiredAt']
        )


@dataclass(frozen=True)
class Versioned(Generic[T]):
    """A value paired with the store version token it was read or written at."""
    value: T
    version: str

    def matches(self, version: Optional[str]) -> bool:
        return self.version == version
