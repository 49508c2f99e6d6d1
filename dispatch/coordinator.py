from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Mapping, Optional

from dateutil import parser
from loguru import logger

from database import queries as db_queries
from dispatch import events
from dispatch.exceptions import (
    AuthorizationError, DispatchError, NotFoundError, RequestUnavailable, StoreError, ValidationError,
)
from dispatch.fanout import CLIENTS, DRIVERS, NotificationHub, request_room
from dispatch.registry import PendingEntry, SessionRegistry
from dispatch.schemas import (
    DEFAULT_ADDRESS, DEFAULT_EMERGENCY_DETAILS,
    AcceptRequestPayload, AuthenticatePayload, CancelRequestPayload, EmergencyRequestPayload,
    RequestStatusPayload, VehicleLocationPayload, VehicleStatusPayload, parse_payload,
)
from dispatch.status_map import DEFAULT_STATUS_MAP, StatusMapping, build_status_map
from states.fsm_states import (
    CANCELLABLE_REQUEST_STATUSES, MISSION_VEHICLE_STATUSES, RELEASING_VEHICLE_STATUSES,
    TERMINAL_REQUEST_STATUSES, RequestStatus, Role, VehicleStatus,
    can_transition, presence_for_vehicle_status,
)
from utils.auth import Identity, TokenVerifier

_TERMINAL_VALUES = {s.value for s in TERMINAL_REQUEST_STATUSES}


@dataclass
class StatusUpdateResult:
    request: dict[str, Any]
    event: str
    vehicle_status: Optional[VehicleStatus]
    # True when the driver's "request in progress" view should close
    progress_finished: bool


def request_summary(request: dict[str, Any]) -> dict[str, Any]:
    """What drivers see of a pending request."""
    return {
        'requestId': request['id'],
        'location': request['location'],
        'criticalLevel': request['criticalLevel'],
        'patientCount': request['patientCount'],
        'emergencyDetails': request['emergencyDetails'],
        'createdAt': request['createdAt'],
    }


def vehicle_summary(vehicle: dict[str, Any]) -> dict[str, Any]:
    """What clients see of an ambulance on the map."""
    location = vehicle['currentLocation']
    return {
        'vehicleId': vehicle['vehicleId'],
        'vehicleType': vehicle['vehicleType'],
        'status': vehicle['status'],
        'latitude': location['latitude'],
        'longitude': location['longitude'],
        'lastUpdated': location['lastUpdated'],
    }


class DispatchCoordinator:
    """
    Request lifecycle: pending -> accepted -> in_progress -> completed,
    with cancellation from pending or accepted.

    Every inbound event maps onto one coroutine method taking the connection id
    and the raw payload. Methods return a result or raise a DispatchError; the
    transport turns either into the reply event. Group and room notifications
    are sent from here, always after the store write they describe succeeded.

    A request is assigned to at most one vehicle: the claim in
    `SessionRegistry.claim_pending_request` happens before the store update,
    and the store update itself only succeeds on a request still in `pending`.
    """

    def __init__(
        self,
        registry: SessionRegistry,
        hub: NotificationHub,
        store=db_queries,
        verifier: TokenVerifier | None = None,
        status_map: Mapping[str, tuple] | None = None,
        require_driver_auth: bool = False,
        strict_request_status: bool = False,
        stale_after: timedelta = timedelta(minutes=15),
    ):
        self.registry = registry
        self.hub = hub
        self.store = store
        self.verifier = verifier
        self.status_map: StatusMapping = build_status_map(DEFAULT_STATUS_MAP if status_map is None else status_map)
        self.require_driver_auth = require_driver_auth
        self.strict_request_status = strict_request_status
        self.stale_after = stale_after

    def register_status_mapping(self, event: str, request_status: str, vehicle_status: str | None = None) -> None:
        """Adds or replaces a fine-grained driver event in the status table."""
        self.status_map.update(build_status_map({event: (request_status, vehicle_status)}))

    # --- Identity ---

    async def authenticate(self, connection_id: str, payload: dict | None) -> Identity:
        if self.verifier is None:
            raise AuthorizationError("Authentication is not configured")
        data = parse_payload(AuthenticatePayload, payload)
        identity = self.verifier.verify(data.token)
        self.registry.register_identity(connection_id, identity)
        logger.info(f"Connection authenticated as {identity.role.value} {identity.subject_id}")
        try:
            await self.store.touch_last_login(identity.subject_id)
        except StoreError:
            logger.warning(f"Could not record login time for account {identity.subject_id}")
        return identity

    def _require_driver(self, connection_id: str) -> None:
        if not self.require_driver_auth:
            return
        identity = self.registry.identity_of(connection_id)
        if identity is None or identity.role != Role.DRIVER:
            raise AuthorizationError("Driver authentication required")

    # --- Client operations ---

    async def submit_request(self, connection_id: str, payload: dict | None) -> dict[str, Any]:
        """Persists a new pending request, caches it and offers it to every driver."""
        data = parse_payload(EmergencyRequestPayload, payload)

        identity = self.registry.identity_of(connection_id)
        requester_id = identity.subject_id if identity is not None else data.user_id
        if requester_id is None:
            raise ValidationError("userId is required")

        request = await self.store.create_request(
            requester_id=requester_id,
            latitude=data.location.latitude,
            longitude=data.location.longitude,
            address=data.location.address or DEFAULT_ADDRESS,
            emergency_details=data.emergency_details or DEFAULT_EMERGENCY_DETAILS,
            patient_count=data.patient_count,
            critical_level=data.critical_level.value,
        )
        self.registry.cache_pending_request(request['id'], request, connection_id)
        logger.info(f"New emergency request {request['id']} ({request['criticalLevel']}) from requester {requester_id}")

        delivered = await self.hub.broadcast(DRIVERS, events.NEW_EMERGENCY_REQUEST, request_summary(request))
        logger.info(f"Request {request['id']} offered to {delivered} driver connection(s)")
        return request

    async def cancel_request(self, connection_id: str, payload: dict | None) -> dict[str, Any]:
        data = parse_payload(CancelRequestPayload, payload)
        current = await self.store.get_request(data.request_id)
        if current is None:
            raise NotFoundError(f"Request {data.request_id} not found")

        identity = self.registry.identity_of(connection_id)
        if (identity is not None and identity.role != Role.ADMIN
                and str(identity.subject_id) != str(current['requesterId'])):
            raise AuthorizationError("Not authorized to cancel this request")

        if current['status'] not in {s.value for s in CANCELLABLE_REQUEST_STATUSES}:
            raise ValidationError(f"Request cannot be cancelled in status '{current['status']}'")

        # Статус в базе должен совпасть с прочитанным выше
        cancelled = await self.store.cancel_request(data.request_id, current['status'])
        if cancelled is None:
            raise RequestUnavailable("Request already processed")

        self.registry.remove_pending_request(data.request_id)
        logger.info(f"Request {data.request_id} cancelled (was {current['status']})")

        await self.hub.broadcast(DRIVERS, events.REQUEST_REMOVED, {'requestId': data.request_id})
        await self.hub.emit_to_room(
            request_room(data.request_id), events.REQUEST_CANCELLED,
            {'requestId': data.request_id}, exclude=connection_id
        )

        if current['vehicleId']:
            try:
                await self._apply_vehicle_status(current['vehicleId'], VehicleStatus.AVAILABLE)
            except DispatchError as e:
                logger.error(f"Vehicle {current['vehicleId']} not released after cancelling request {data.request_id}: {e}")
        return cancelled

    async def active_ambulances(self, connection_id: str) -> list[dict[str, Any]]:
        vehicles = await self.store.get_active_vehicles()
        return [vehicle_summary(v) for v in vehicles]

    # --- Driver operations ---

    async def list_pending(self, connection_id: str) -> list[dict[str, Any]]:
        """
        Returns every pending request from the store to the asking driver only.
        Requests not yet cached are cached with this connection as their contact point.
        """
        self._require_driver(connection_id)
        requests = await self.store.get_requests_by_status([RequestStatus.PENDING])
        added = sum(
            1 for request in requests
            if self.registry.cache_pending_if_absent(request['id'], request, connection_id)
        )
        if added:
            logger.info(f"Pending refresh cached {added} request(s) missing from the registry")
        return [request_summary(r) for r in requests]

    async def accept_request(self, connection_id: str, payload: dict | None) -> dict[str, Any]:
        self._require_driver(connection_id)
        data = parse_payload(AcceptRequestPayload, payload)
        request_id, vehicle_id = data.request_id, data.vehicle_id

        registered = self.registry.lookup_driver(connection_id)
        if registered is not None and registered != vehicle_id:
            raise ValidationError("Vehicle does not match this connection")

        vehicle = await self.store.get_vehicle(vehicle_id)
        if vehicle is None:
            raise NotFoundError(f"Vehicle {vehicle_id} not found")

        # Nothing below may await before the claim: it is the only linearization point
        entry = self.registry.claim_pending_request(request_id)
        if entry is None:
            logger.info(f"Vehicle {vehicle_id} lost the claim for request {request_id}")
            raise RequestUnavailable()

        try:
            request = await self.store.accept_request(request_id, vehicle_id)
        except StoreError:
            self.registry.restore_pending_request(request_id, entry)
            logger.error(f"Accept of request {request_id} by {vehicle_id} failed in store; request returned to the pending cache")
            raise
        self.registry.settle_claim(request_id)

        if request is None:
            logger.info(f"Request {request_id} was no longer pending in the store when {vehicle_id} claimed it")
            raise RequestUnavailable()

        logger.info(f"Vehicle {vehicle_id} accepted request {request_id}")

        try:
            vehicle = await self._apply_vehicle_status(vehicle_id, VehicleStatus.EN_ROUTE, connection_id, announce=False)
        except DispatchError as e:
            logger.error(f"Request {request_id} accepted but vehicle {vehicle_id} status not updated: {e}")
            self.registry.register_driver(connection_id, vehicle_id)

        room = request_room(request_id)
        self.hub.join(room, connection_id)
        joined = [conn for conn in self._requester_connections(entry, request) if self.hub.join(room, conn)]
        if joined:
            await self.hub.emit_to_room(room, events.REQUEST_ACCEPTED, {
                'requestId': request_id,
                'vehicleId': vehicle_id,
                'vehicleType': vehicle['vehicleType'],
                'currentLocation': vehicle['currentLocation'],
            }, exclude=connection_id)
        else:
            logger.info(f"Requester of request {request_id} is not connected; acceptance not delivered")

        await self.hub.broadcast(DRIVERS, events.REQUEST_REMOVED, {'requestId': request_id}, exclude=connection_id)
        return request

    def _requester_connections(self, entry: PendingEntry, request: dict[str, Any]) -> list[str]:
        """Live client connections of the requester: the cached origin plus any authenticated as the requester."""
        candidates = []
        origin = entry.origin_connection_id
        # A refresh may have recorded a driver as the contact point; only clients qualify
        if origin is not None and self.hub.group_of(origin) == CLIENTS:
            candidates.append(origin)
        for conn in self.registry.connections_for_account(request['requesterId']):
            if self.hub.group_of(conn) == CLIENTS and conn not in candidates:
                candidates.append(conn)
        return candidates

    async def update_request_status(self, connection_id: str, payload: dict | None) -> StatusUpdateResult:
        self._require_driver(connection_id)
        data = parse_payload(RequestStatusPayload, payload)

        mapping = self.status_map.get(data.status)
        if mapping is None:
            return await self._apply_raw_request_status(connection_id, data)

        request_status, vehicle_status = mapping
        current = await self.store.get_request(data.request_id)
        if current is None:
            raise NotFoundError(f"Request {data.request_id} not found")
        vehicle_id = current['vehicleId']
        if vehicle_id is None:
            raise ValidationError(f"Request {data.request_id} has no assigned vehicle")
        registered = self.registry.lookup_driver(connection_id)
        if registered is not None and registered != vehicle_id:
            raise AuthorizationError("Request is assigned to another vehicle")

        request = await self.store.update_request_status(data.request_id, request_status)
        if request is None:
            raise NotFoundError(f"Request {data.request_id} not found")
        if request_status in TERMINAL_REQUEST_STATUSES:
            self.registry.remove_pending_request(data.request_id)

        if vehicle_status is not None:
            try:
                await self._apply_vehicle_status(vehicle_id, vehicle_status, connection_id)
            except DispatchError as e:
                logger.error(f"Request {data.request_id} moved to {request_status.value} but vehicle {vehicle_id} was not updated: {e}")

        logger.info(f"Request {data.request_id}: {data.status} -> request {request_status.value}, "
                    f"vehicle {vehicle_status.value if vehicle_status else 'unchanged'}")
        await self.hub.emit_to_room(request_room(data.request_id), events.EMERGENCY_STATUS_UPDATE, {
            'requestId': data.request_id,
            'status': data.status,
            'requestStatus': request_status.value,
            'vehicleStatus': vehicle_status.value if vehicle_status else None,
        }, exclude=connection_id)

        return StatusUpdateResult(
            request=request,
            event=data.status,
            vehicle_status=vehicle_status,
            progress_finished=request_status in TERMINAL_REQUEST_STATUSES,
        )

    async def _apply_raw_request_status(self, connection_id: str, data: RequestStatusPayload) -> StatusUpdateResult:
        """Stores a status that has no entry in the status table as given."""
        if self.strict_request_status:
            current = await self.store.get_request(data.request_id)
            if current is None:
                raise NotFoundError(f"Request {data.request_id} not found")
            if not can_transition(current['status'], data.status):
                raise ValidationError(f"Invalid status transition: {current['status']} -> {data.status}")

        request = await self.store.update_request_status(data.request_id, data.status)
        if request is None:
            raise NotFoundError(f"Request {data.request_id} not found")
        if data.status in _TERMINAL_VALUES:
            self.registry.remove_pending_request(data.request_id)

        logger.info(f"Request {data.request_id} status set to '{data.status}'")
        await self.hub.emit_to_room(request_room(data.request_id), events.EMERGENCY_STATUS_UPDATE, {
            'requestId': data.request_id,
            'status': data.status,
            'requestStatus': request['status'],
            'vehicleStatus': None,
        }, exclude=connection_id)
        return StatusUpdateResult(request=request, event=data.status, vehicle_status=None, progress_finished=True)

    async def update_vehicle_status(self, connection_id: str, payload: dict | None) -> dict[str, Any]:
        self._require_driver(connection_id)
        data = parse_payload(VehicleStatusPayload, payload)
        return await self._apply_vehicle_status(data.vehicle_id, data.status, connection_id)

    async def _apply_vehicle_status(
        self,
        vehicle_id: str,
        status: VehicleStatus,
        connection_id: str | None = None,
        announce: bool = True,
    ) -> dict[str, Any]:
        """
        Persists a vehicle status and keeps the driver session in step with it.
        Releasing statuses drop the session and take the ambulance off client maps.
        """
        vehicle = await self.store.update_vehicle_status(vehicle_id, status)
        if vehicle is None:
            raise NotFoundError(f"Vehicle {vehicle_id} not found")

        if status in RELEASING_VEHICLE_STATUSES:
            connections = [connection_id] if connection_id else self.registry.connections_for_vehicle(vehicle_id)
            for conn in connections:
                self.registry.unregister_driver(conn)
            await self._sync_presence(vehicle, status)
            logger.info(f"Vehicle {vehicle_id} is {status.value}; driver session released")
            await self.hub.broadcast(CLIENTS, events.REMOVE_AMBULANCE, {'vehicleId': vehicle_id})
        else:
            if connection_id:
                self.registry.register_driver(connection_id, vehicle_id)
            await self._sync_presence(vehicle, status)
            if announce:
                await self.hub.broadcast(CLIENTS, events.AMBULANCE_STATUS, {
                    'vehicleId': vehicle_id,
                    'status': status.value,
                    'vehicleType': vehicle['vehicleType'],
                })
        return vehicle

    async def _sync_presence(self, vehicle: dict[str, Any], status: VehicleStatus) -> None:
        try:
            await self.store.set_account_presence(vehicle['accountId'], presence_for_vehicle_status(status))
        except StoreError:
            logger.warning(f"Presence of account {vehicle['accountId']} not updated")

    async def update_vehicle_location(self, connection_id: str, payload: dict | None) -> dict[str, Any]:
        self._require_driver(connection_id)
        data = parse_payload(VehicleLocationPayload, payload)

        vehicle = await self.store.update_vehicle_location(data.vehicle_id, data.latitude, data.longitude)
        if vehicle is None:
            raise NotFoundError(f"Vehicle {data.vehicle_id} not found")
        self.registry.update_driver_position(connection_id, data.latitude, data.longitude)

        await self.hub.broadcast(CLIENTS, events.AMBULANCE_LOCATION, {
            'vehicleId': data.vehicle_id,
            'latitude': data.latitude,
            'longitude': data.longitude,
        })

        # The requester being served also gets the position on the private channel
        if vehicle['status'] in {s.value for s in MISSION_VEHICLE_STATUSES}:
            active = await self.store.get_active_request_for_vehicle(data.vehicle_id)
            if active is not None:
                await self.hub.emit_to_room(request_room(active['id']), events.ASSIGNED_AMBULANCE_LOCATION, {
                    'requestId': active['id'],
                    'vehicleId': data.vehicle_id,
                    'latitude': data.latitude,
                    'longitude': data.longitude,
                    'status': vehicle['status'],
                }, exclude=connection_id)
        return vehicle

    # --- Connection lifecycle ---

    async def handle_driver_disconnect(self, connection_id: str) -> bool:
        """
        Takes the connection's vehicle offline. Returns False when the connection
        had no driver session, which makes repeated calls harmless.
        """
        self.hub.detach(connection_id)
        self.registry.forget_identity(connection_id)

        vehicle_id = self.registry.unregister_driver(connection_id)
        if vehicle_id is None:
            logger.debug("Disconnected driver connection had no active session")
            return False

        if self.registry.connections_for_vehicle(vehicle_id):
            logger.info(f"Vehicle {vehicle_id} is still held by another driver connection, keeping it online")
            return True

        try:
            vehicle = await self.store.update_vehicle_status(vehicle_id, VehicleStatus.OFFLINE)
        except StoreError:
            logger.error(f"Vehicle {vehicle_id} could not be set offline after disconnect")
            return True

        if vehicle is not None:
            await self._sync_presence(vehicle, VehicleStatus.OFFLINE)
        logger.info(f"Vehicle {vehicle_id} set offline after driver disconnect")
        await self.hub.broadcast(CLIENTS, events.REMOVE_AMBULANCE, {'vehicleId': vehicle_id})
        return True

    def handle_client_disconnect(self, connection_id: str) -> None:
        self.hub.detach(connection_id)
        self.registry.forget_identity(connection_id)

    # --- Housekeeping ---

    async def resync_pending(self) -> int:
        """
        Re-derives the pending cache from the store. Requests missing from the
        cache (lost on restart or never cached) come back with no origin connection.
        """
        requests = await self.store.get_requests_by_status([RequestStatus.PENDING])
        added = 0
        now = datetime.now(timezone.utc)
        for request in requests:
            if self.registry.cache_pending_if_absent(request['id'], request, None):
                added += 1
            created_at = request.get('createdAt')
            if created_at:
                created = parser.isoparse(created_at)
                if created.tzinfo is None:
                    created = created.replace(tzinfo=timezone.utc)
                if now - created > self.stale_after:
                    logger.warning(f"Request {request['id']} has been pending since {created_at}")
        if added:
            logger.info(f"Resync restored {added} pending request(s) to the cache")
        return added
