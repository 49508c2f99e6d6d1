from typing import Mapping, Optional

from states.fsm_states import RequestStatus, VehicleStatus

# Fine-grained driver events -> (request status, vehicle status).
# A vehicle status of None leaves the vehicle untouched.
StatusMapping = dict[str, tuple[RequestStatus, Optional[VehicleStatus]]]

DEFAULT_STATUS_MAP: StatusMapping = {
    "arrived_at_scene": (RequestStatus.IN_PROGRESS, VehicleStatus.WITH_PATIENT),
    "en_route_to_hospital": (RequestStatus.IN_PROGRESS, VehicleStatus.WITH_PATIENT),
    "arrived_at_hospital": (RequestStatus.IN_PROGRESS, VehicleStatus.AT_HOSPITAL),
    "completed": (RequestStatus.COMPLETED, VehicleStatus.AVAILABLE),
}


def build_status_map(entries: Mapping[str, tuple] | None) -> StatusMapping:
    """Normalizes a `{event: (request_status, vehicle_status)}` table, raising ValueError on unknown statuses."""
    status_map: StatusMapping = {}
    for event, (request_status, vehicle_status) in (entries or {}).items():
        status_map[event] = (
            RequestStatus(request_status),
            VehicleStatus(vehicle_status) if vehicle_status is not None else None,
        )
    return status_map
