from loguru import logger

from dispatch.exceptions import DispatchError, RequestUnavailable, StoreError
from dispatch.fanout import NotificationHub

GENERIC_ERROR_MESSAGE = "Internal server error"


async def handle_event_error(hub: NotificationHub, connection_id: str, reply_event: str,
                             event: str, exception: Exception) -> None:
    """
    Catches every exception raised while handling one inbound event.
    Logs it and answers the same connection with `{success: false, message}`;
    the connection stays open.
    """
    if isinstance(exception, RequestUnavailable):
        # Проигранная гонка за вызов - нормальная ситуация
        logger.info(f"'{event}' rejected: {exception.message}")
        message = exception.message
    elif isinstance(exception, StoreError):
        logger.error(f"'{event}' failed in store: {exception.__cause__ or exception}")
        message = StoreError.default_message
    elif isinstance(exception, DispatchError):
        logger.warning(f"'{event}' rejected: {exception.message}")
        message = exception.message
    else:
        # Логируем полное исключение
        logger.exception(f"Cause exception while handling '{event}': {exception}")
        message = GENERIC_ERROR_MESSAGE

    await hub.send_to(connection_id, reply_event, {'success': False, 'message': message})
