"""Thread-safe registry of deployment_id -> lease for exclusive mutating operations."""
import threading
import time
import uuid
import logging
from typing import Dict, List, Optional

logger = logging.getLogger(__name__)


class Lease:
    """Exclusive right to mutate one deployment. Released on context exit."""

    def __init__(self, registry: "LeaseRegistry", deployment_id: str, operation: str):
        self.registry = registry
        self.deployment_id = deployment_id
        self.operation = operation
        self.token = uuid.uuid4().hex
        self.acquired_at = time.monotonic()
        self.released = False

    def release(self) -> None:
        self.registry.release(self)

    def __enter__(self) -> "Lease":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()

    def __repr__(self) -> str:
        return f"Lease({self.deployment_id!r}, {self.operation!r})"


class LeaseRegistry:
    def __init__(self):
        self._lock = threading.Lock()
        self._leases: Dict[str, Lease] = {}

    def try_acquire(self, deployment_id: str, operation: str = "mutate") -> Optional[Lease]:
        """Acquire the lease for deployment_id. Returns None immediately if it is already held."""
        with self._lock:
            holder = self._leases.get(deployment_id)
            if holder is not None:
                logger.debug(f"Deployment {deployment_id} busy with {holder.operation}, rejecting {operation}")
                return None
            lease = Lease(self, deployment_id, operation)
            self._leases[deployment_id] = lease
        logger.debug(f"Acquired lease for deployment {deployment_id} ({operation})")
        return lease

    def release(self, lease: Lease) -> None:
        """Release lease. Idempotent; a stale lease never evicts a newer holder."""
        with self._lock:
            if lease.released:
                return
            lease.released = True
            if self._leases.get(lease.deployment_id) is lease:
                del self._leases[lease.deployment_id]
        logger.debug(f"Released lease for deployment {lease.deployment_id} ({lease.operation})")

    def is_held(self, deployment_id: str) -> bool:
        with self._lock:
            return deployment_id in self._leases

    def held(self) -> List[str]:
        with self._lock:
            return list(self._leases)
