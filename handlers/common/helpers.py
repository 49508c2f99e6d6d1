import json
import uuid
from typing import Any, Awaitable, Callable

from fastapi import WebSocket, WebSocketDisconnect
from loguru import logger

from dispatch import events
from dispatch.coordinator import DispatchCoordinator
from dispatch.exceptions import ValidationError
from handlers.error_handler import handle_event_error
from handlers.middlewares.logging_middleware import connection_context

EventHandler = Callable[[DispatchCoordinator, str, Any], Awaitable[None]]
CloseHandler = Callable[[DispatchCoordinator, str], Awaitable[None]]


def parse_message(text: str) -> tuple[str, Any]:
    """Splits a `{"event": ..., "data": ...}` frame, raising ValidationError on anything else."""
    try:
        message = json.loads(text)
    except json.JSONDecodeError:
        raise ValidationError("Malformed message")
    if not isinstance(message, dict) or not isinstance(message.get('event'), str):
        raise ValidationError("Message must be an object with an 'event' field")
    return message['event'], message.get('data')


async def on_authenticate(coordinator: DispatchCoordinator, connection_id: str, data: Any) -> None:
    identity = await coordinator.authenticate(connection_id, data)
    await coordinator.hub.send_to(connection_id, events.AUTHENTICATED, {
        'success': True,
        'userId': identity.subject_id,
        'userType': identity.role.value,
    })


async def dispatch_message(
    coordinator: DispatchCoordinator,
    connection_id: str,
    text: str,
    handlers: dict[str, EventHandler],
    error_events: dict[str, str],
) -> None:
    """Routes one inbound frame to its handler; every failure becomes an error reply."""
    try:
        event, data = parse_message(text)
    except ValidationError as e:
        logger.warning(f"Rejected frame: {e.message}")
        await coordinator.hub.send_to(connection_id, events.REQUEST_ERROR, {'success': False, 'message': e.message})
        return

    handler = handlers.get(event)
    if handler is None:
        logger.warning(f"Unknown event '{event}'")
        await coordinator.hub.send_to(
            connection_id, events.REQUEST_ERROR, {'success': False, 'message': f"Unknown event: {event}"}
        )
        return

    try:
        await handler(coordinator, connection_id, data)
    except Exception as e:
        await handle_event_error(coordinator.hub, connection_id, error_events.get(event, events.REQUEST_ERROR), event, e)


async def serve_connection(
    websocket: WebSocket,
    group: str,
    handlers: dict[str, EventHandler],
    error_events: dict[str, str],
    on_close: CloseHandler,
) -> None:
    """
    Runs one WebSocket connection from accept to close.
    Cleanup in `on_close` runs however the loop ends.
    """
    coordinator: DispatchCoordinator = websocket.app.state.coordinator
    connection_id = uuid.uuid4().hex

    await websocket.accept()
    coordinator.hub.attach(connection_id, websocket.send_json, group)

    with connection_context(connection_id, group):
        logger.info("Connection opened")
        try:
            while True:
                text = await websocket.receive_text()
                await dispatch_message(coordinator, connection_id, text, handlers, error_events)
        except WebSocketDisconnect as e:
            logger.info(f"Connection closed (code {e.code})")
        finally:
            await on_close(coordinator, connection_id)
