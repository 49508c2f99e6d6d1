from contextlib import contextmanager
from typing import Iterator

from loguru import logger


@contextmanager
def connection_context(connection_id: str, channel: str) -> Iterator[None]:
    """
    "Привязывает" ID соединения и канал ко всем логам,
    сгенерированным за время жизни одного WebSocket-соединения.
    """
    # Используем contextvars для безопасной передачи контекста в асинхронной среде
    with logger.contextualize(connection_id=connection_id, channel=channel):
        yield
