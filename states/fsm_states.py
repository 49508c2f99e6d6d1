from enum import Enum


class Role(str, Enum):
    """Account roles."""
    REQUESTER = "requester"
    DRIVER = "driver"
    ADMIN = "admin"
    FACILITY = "facility"


class Presence(str, Enum):
    ONLINE = "online"
    OFFLINE = "offline"
    BUSY = "busy"


class VehicleType(str, Enum):
    BASIC = "basic"
    ADVANCED = "advanced"
    CRITICAL = "critical"


class VehicleStatus(str, Enum):
    """Operational status of an ambulance."""
    AVAILABLE = "available"
    EN_ROUTE = "en_route"
    WITH_PATIENT = "with_patient"
    AT_HOSPITAL = "at_hospital"
    OFFLINE = "offline"


class CriticalLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class RequestStatus(str, Enum):
    """States of the emergency request lifecycle."""
    PENDING = "pending"
    ACCEPTED = "accepted"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


# Allowed lifecycle transitions: pending -> accepted -> in_progress -> completed,
# with cancellation possible from pending and accepted.
REQUEST_TRANSITIONS: dict[RequestStatus, frozenset[RequestStatus]] = {
    RequestStatus.PENDING: frozenset({RequestStatus.ACCEPTED, RequestStatus.CANCELLED}),
    RequestStatus.ACCEPTED: frozenset({RequestStatus.IN_PROGRESS, RequestStatus.CANCELLED}),
    RequestStatus.IN_PROGRESS: frozenset({RequestStatus.COMPLETED}),
    RequestStatus.COMPLETED: frozenset(),
    RequestStatus.CANCELLED: frozenset(),
}

TERMINAL_REQUEST_STATUSES = frozenset({RequestStatus.COMPLETED, RequestStatus.CANCELLED})

CANCELLABLE_REQUEST_STATUSES = frozenset({RequestStatus.PENDING, RequestStatus.ACCEPTED})

# Statuses that take a vehicle out of service: discount is cleared and the
# driver session is released.
RELEASING_VEHICLE_STATUSES = frozenset({VehicleStatus.OFFLINE, VehicleStatus.AT_HOSPITAL})

# Statuses in which a vehicle is serving an accepted request
MISSION_VEHICLE_STATUSES = frozenset({VehicleStatus.EN_ROUTE, VehicleStatus.WITH_PATIENT})

# Vehicles shown on client maps
VISIBLE_VEHICLE_STATUSES = frozenset({
    VehicleStatus.AVAILABLE, VehicleStatus.EN_ROUTE,
    VehicleStatus.WITH_PATIENT, VehicleStatus.AT_HOSPITAL,
})


def can_transition(current: str, new: str) -> bool:
    """Checks whether a request may move from `current` to `new`."""
    try:
        return RequestStatus(new) in REQUEST_TRANSITIONS[RequestStatus(current)]
    except ValueError:
        return False


def presence_for_vehicle_status(status: VehicleStatus) -> Presence:
    """Maps a vehicle status onto the presence of the owning driver account."""
    if status == VehicleStatus.OFFLINE:
        return Presence.OFFLINE
    if status in MISSION_VEHICLE_STATUSES:
        return Presence.BUSY
    return Presence.ONLINE
