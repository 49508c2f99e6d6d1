"""
Ephemeral session state shared by all connection handlers.

Every method is synchronous. Handlers run on a single event loop, so a
method that never awaits cannot interleave with another handler; this is
what makes `claim_pending_request` a linearizable check-and-remove.
The registry is a cache over the durable store: a restart loses it, drivers
re-announce their status and pending requests are re-derived by a refresh.
"""
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional

from loguru import logger

from utils.auth import Identity


@dataclass
class DriverSession:
    vehicle_id: str
    latitude: float | None = None
    longitude: float | None = None
    updated_at: datetime | None = None


@dataclass
class PendingEntry:
    request: dict[str, Any]
    origin_connection_id: str | None
    cached_at: datetime = field(default_factory=datetime.now)


class SessionRegistry:
    """Connection -> driver/identity maps and the pending-request cache."""

    def __init__(self):
        self._drivers: dict[str, DriverSession] = {}
        self._identities: dict[str, Identity] = {}
        self._pending: dict[int, PendingEntry] = {}
        # Requests removed from the cache by a claim whose store update has not finished yet
        self._claims_in_flight: set[int] = set()
        self.running = False

    # --- Lifecycle ---

    def start(self) -> None:
        self.running = True
        logger.info("Session registry started")

    def stop(self) -> None:
        logger.info(
            f"Session registry stopped: dropping {len(self._drivers)} driver session(s) "
            f"and {len(self._pending)} pending request(s)"
        )
        self._drivers.clear()
        self._identities.clear()
        self._pending.clear()
        self._claims_in_flight.clear()
        self.running = False

    # --- Drivers ---

    def register_driver(self, connection_id: str, vehicle_id: str) -> None:
        """Latest write wins; the known position survives re-registration of the same vehicle."""
        session = self._drivers.get(connection_id)
        if session is not None and session.vehicle_id == vehicle_id:
            return
        self._drivers[connection_id] = DriverSession(vehicle_id=vehicle_id)

    def unregister_driver(self, connection_id: str) -> Optional[str]:
        """
        Removes the driver mapping.
        Returns the vehicle id on the call that removed it and None on every later call,
        so callers can run release side effects exactly once.
        """
        session = self._drivers.pop(connection_id, None)
        return session.vehicle_id if session else None

    def lookup_driver(self, connection_id: str) -> Optional[str]:
        session = self._drivers.get(connection_id)
        return session.vehicle_id if session else None

    def driver_session(self, connection_id: str) -> Optional[DriverSession]:
        return self._drivers.get(connection_id)

    def update_driver_position(self, connection_id: str, latitude: float, longitude: float) -> bool:
        session = self._drivers.get(connection_id)
        if session is None:
            return False
        session.latitude = latitude
        session.longitude = longitude
        session.updated_at = datetime.now()
        return True

    def connections_for_vehicle(self, vehicle_id: str) -> list[str]:
        return [conn for conn, session in self._drivers.items() if session.vehicle_id == vehicle_id]

    def active_drivers(self) -> dict[str, DriverSession]:
        return dict(self._drivers)

    # --- Identities ---

    def register_identity(self, connection_id: str, identity: Identity) -> None:
        self._identities[connection_id] = identity

    def identity_of(self, connection_id: str) -> Optional[Identity]:
        return self._identities.get(connection_id)

    def forget_identity(self, connection_id: str) -> None:
        self._identities.pop(connection_id, None)

    def connections_for_account(self, account_id) -> list[str]:
        return [
            conn for conn, identity in self._identities.items()
            if str(identity.subject_id) == str(account_id)
        ]

    # --- Pending requests ---

    def cache_pending_request(self, request_id: int, snapshot: dict[str, Any], origin_connection_id: str | None) -> None:
        self._pending[request_id] = PendingEntry(request=snapshot, origin_connection_id=origin_connection_id)

    def cache_pending_if_absent(self, request_id: int, snapshot: dict[str, Any], origin_connection_id: str | None) -> bool:
        """Caches a request found in the store unless it is cached already or being claimed."""
        if request_id in self._pending or request_id in self._claims_in_flight:
            return False
        self.cache_pending_request(request_id, snapshot, origin_connection_id)
        return True

    def claim_pending_request(self, request_id: int) -> Optional[PendingEntry]:
        """Removes and returns the entry. Only the first caller for an id gets it."""
        entry = self._pending.pop(request_id, None)
        if entry is not None:
            self._claims_in_flight.add(request_id)
        return entry

    def settle_claim(self, request_id: int) -> None:
        """The store now reflects the claim; refreshes may see the request again."""
        self._claims_in_flight.discard(request_id)

    def restore_pending_request(self, request_id: int, entry: PendingEntry) -> None:
        """Puts a claimed entry back after the store update failed."""
        self._claims_in_flight.discard(request_id)
        self._pending.setdefault(request_id, entry)

    def remove_pending_request(self, request_id: int) -> bool:
        return self._pending.pop(request_id, None) is not None

    def pending_entry(self, request_id: int) -> Optional[PendingEntry]:
        return self._pending.get(request_id)

    def pending_request_ids(self) -> list[int]:
        return list(self._pending)

    def stats(self) -> dict[str, int]:
        return {
            'drivers': len(self._drivers),
            'pendingRequests': len(self._pending),
            'identities': len(self._identities),
        }
