from typing import Any

from fastapi import APIRouter, WebSocket

from dispatch import events
from dispatch.coordinator import DispatchCoordinator
from dispatch.fanout import DRIVERS
from handlers.common.helpers import on_authenticate, serve_connection

router = APIRouter()


async def on_update_status(coordinator: DispatchCoordinator, connection_id: str, data: Any):
    vehicle = await coordinator.update_vehicle_status(connection_id, data)
    await coordinator.hub.send_to(connection_id, events.STATUS_UPDATED, {
        'success': True,
        'vehicleId': vehicle['vehicleId'],
        'status': vehicle['status'],
    })


async def on_location_update(coordinator: DispatchCoordinator, connection_id: str, data: Any):
    # Ответа нет, координаты уходят клиентам широковещательно
    await coordinator.update_vehicle_location(connection_id, data)


async def on_get_pending_requests(coordinator: DispatchCoordinator, connection_id: str, data: Any):
    pending = await coordinator.list_pending(connection_id)
    await coordinator.hub.send_to(connection_id, events.PENDING_REQUESTS, pending)


async def on_accept_request(coordinator: DispatchCoordinator, connection_id: str, data: Any):
    request = await coordinator.accept_request(connection_id, data)
    await coordinator.hub.send_to(connection_id, events.ACCEPTED_PROGRESS, {
        'success': True,
        'requestId': request['id'],
        'request': request,
    })


async def on_update_request_status(coordinator: DispatchCoordinator, connection_id: str, data: Any):
    result = await coordinator.update_request_status(connection_id, data)
    if result.progress_finished:
        await coordinator.hub.send_to(connection_id, events.ACCEPTED_PROGRESS_DISABLE, {
            'requestId': result.request['id'],
            'status': result.request['status'],
        })
        return
    await coordinator.hub.send_to(connection_id, events.REQUEST_STATUS_UPDATED, {
        'success': True,
        'requestId': result.request['id'],
        'status': result.event,
        'requestStatus': result.request['status'],
        'vehicleStatus': result.vehicle_status.value if result.vehicle_status else None,
    })


async def on_driver_close(coordinator: DispatchCoordinator, connection_id: str):
    await coordinator.handle_driver_disconnect(connection_id)


HANDLERS = {
    events.AUTHENTICATE: on_authenticate,
    events.UPDATE_STATUS: on_update_status,
    events.LOCATION_UPDATE: on_location_update,
    events.GET_PENDING_REQUESTS: on_get_pending_requests,
    events.ACCEPT_REQUEST: on_accept_request,
    events.UPDATE_REQUEST_STATUS: on_update_request_status,
}

ERROR_EVENTS = {
    events.AUTHENTICATE: events.AUTHENTICATED,
    events.ACCEPT_REQUEST: events.ACCEPT_ERROR,
}


@router.websocket('/ws/driver')
async def driver_endpoint(websocket: WebSocket):
    await serve_connection(websocket, DRIVERS, HANDLERS, ERROR_EVENTS, on_driver_close)
