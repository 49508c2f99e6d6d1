import os
import sys

import pytest
import pytest_asyncio

# Добавляем корень проекта в sys.path
sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

# config.config требует секрет при импорте
os.environ.setdefault('JWT_SECRET', 'test-secret')

from database.db import init_db
from dispatch.coordinator import DispatchCoordinator
from dispatch.fanout import CLIENTS, DRIVERS, NotificationHub
from dispatch.registry import SessionRegistry
from utils.auth import TokenVerifier

TEST_SECRET = 'test-secret'


class FakeConnection:
    """Собирает все сообщения, отправленные соединению через NotificationHub."""

    def __init__(self, fail: bool = False):
        self.messages = []
        self.fail = fail

    async def send(self, message):
        if self.fail:
            raise ConnectionError("socket closed")
        self.messages.append(message)

    def events(self, name=None):
        return [m for m in self.messages if name is None or m['event'] == name]


@pytest_asyncio.fixture
async def db_path(tmp_path, mocker):
    """Фикстура: временная SQLite база на каждый тест."""
    path = tmp_path / 'dispatch.db'
    mocker.patch('database.queries.DB_PATH', path)
    mocker.patch('database.db.DB_PATH', path)
    await init_db(path)
    return path


@pytest.fixture
def registry():
    reg = SessionRegistry()
    reg.start()
    return reg


@pytest.fixture
def hub():
    return NotificationHub()


@pytest.fixture
def verifier():
    return TokenVerifier(TEST_SECRET)


@pytest.fixture
def coordinator(registry, hub, verifier):
    """Координатор поверх реальных функций хранилища (используйте вместе с db_path)."""
    return DispatchCoordinator(registry, hub, verifier=verifier)


@pytest.fixture
def connect(hub):
    """Подключает фейковое соединение к группе и возвращает его."""
    def _connect(connection_id: str, group: str = DRIVERS, fail: bool = False) -> FakeConnection:
        conn = FakeConnection(fail=fail)
        hub.attach(connection_id, conn.send, group)
        return conn
    return _connect


@pytest.fixture
def connect_client(connect):
    def _connect(connection_id: str, fail: bool = False) -> FakeConnection:
        return connect(connection_id, CLIENTS, fail)
    return _connect
