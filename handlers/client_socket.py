from typing import Any

from fastapi import APIRouter, WebSocket

from dispatch import events
from dispatch.coordinator import DispatchCoordinator
from dispatch.fanout import CLIENTS
from handlers.common.helpers import on_authenticate, serve_connection

router = APIRouter()


async def on_set_ambulance(coordinator: DispatchCoordinator, connection_id: str, data: Any):
    ambulances = await coordinator.active_ambulances(connection_id)
    await coordinator.hub.send_to(connection_id, events.ACTIVE_AMBULANCES, ambulances)


async def on_emergency_request(coordinator: DispatchCoordinator, connection_id: str, data: Any):
    request = await coordinator.submit_request(connection_id, data)
    await coordinator.hub.send_to(connection_id, events.REQUEST_SUBMITTED, {
        'success': True,
        'requestId': request['id'],
    })


async def on_cancel_request(coordinator: DispatchCoordinator, connection_id: str, data: Any):
    request = await coordinator.cancel_request(connection_id, data)
    await coordinator.hub.send_to(connection_id, events.REQUEST_CANCELLED, {
        'success': True,
        'requestId': request['id'],
    })


async def on_client_close(coordinator: DispatchCoordinator, connection_id: str):
    coordinator.handle_client_disconnect(connection_id)


HANDLERS = {
    events.AUTHENTICATE: on_authenticate,
    events.SET_AMBULANCE: on_set_ambulance,
    events.EMERGENCY_REQUEST: on_emergency_request,
    events.CANCEL_REQUEST: on_cancel_request,
}

ERROR_EVENTS = {
    events.AUTHENTICATE: events.AUTHENTICATED,
}


@router.websocket('/ws/client')
async def client_endpoint(websocket: WebSocket):
    await serve_connection(websocket, CLIENTS, HANDLERS, ERROR_EVENTS, on_client_close)
