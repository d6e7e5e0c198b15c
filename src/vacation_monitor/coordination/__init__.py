"""
Leader election for multi-instance scheduling.

Only one worker instance at a time may run the scheduler. Instances compete
for a single lock record in a shared document store; the record carries an
expiry, so a crashed leader's lock lapses on its own, and every write is
conditional on the version token last read, so two instances can never both
take the same lock.

Key Features:
- Conditional create/update/delete against a version token
- Automatic renewal while the lock is held
- Self-expiry without a separate liveness protocol
- In-memory and MongoDB lock stores
"""

from .distributed_lock import DistributedLock, new_instance_id
from .lock_store import LockStore, MemoryLockStore
from .models import LockRecord, Versioned

__all__ = ['DistributedLock', 'LockStore', 'MemoryLockStore', 'LockRecord', 'Versioned', 'new_instance_id']
