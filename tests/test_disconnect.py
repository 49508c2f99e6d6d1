import pytest
import pytest_asyncio

from database import queries as db_queries
from dispatch import events
from dispatch.exceptions import StoreError
from dispatch.fanout import DRIVERS, request_room
from states.fsm_states import Role


@pytest_asyncio.fixture
async def online_driver(db_path, coordinator, connect):
    """Фикстура: водитель d1 на линии с машиной AMB-1."""
    await db_queries.register_driver('Ivan', 'ivan@example.com', 'hash', 'AMB-1')
    connect('d1')
    await coordinator.update_vehicle_status('d1', {'vehicleId': 'AMB-1', 'status': 'available'})
    await db_queries.set_vehicle_discount('AMB-1', True)


@pytest.mark.asyncio
async def test_driver_disconnect_takes_vehicle_offline(online_driver, coordinator, registry, hub, connect_client):
    client = connect_client('c1')

    assert await coordinator.handle_driver_disconnect('d1') is True

    vehicle = await db_queries.get_vehicle('AMB-1')
    assert vehicle['status'] == 'offline'
    assert vehicle['discount'] is False
    assert (await db_queries.get_account(vehicle['accountId']))['status'] == 'offline'
    assert registry.lookup_driver('d1') is None
    assert hub.group_members(DRIVERS) == set()
    assert client.events(events.REMOVE_AMBULANCE) == [{'event': 'remove-ambulance', 'data': {'vehicleId': 'AMB-1'}}]


@pytest.mark.asyncio
async def test_driver_disconnect_runs_once(online_driver, coordinator, connect_client, mocker):
    client = connect_client('c1')
    spy = mocker.spy(db_queries, 'update_vehicle_status')

    assert await coordinator.handle_driver_disconnect('d1') is True
    assert await coordinator.handle_driver_disconnect('d1') is False

    assert spy.call_count == 1
    assert len(client.events(events.REMOVE_AMBULANCE)) == 1


@pytest.mark.asyncio
async def test_late_close_after_reconnect_keeps_vehicle_online(online_driver, coordinator, registry, connect, connect_client, mocker):
    connect('d2')
    await coordinator.update_vehicle_status('d2', {'vehicleId': 'AMB-1', 'status': 'available'})
    client = connect_client('c1')
    spy = mocker.spy(db_queries, 'update_vehicle_status')

    # Старый сокет закрывается уже после переподключения водителя
    assert await coordinator.handle_driver_disconnect('d1') is True

    assert spy.call_count == 0
    assert (await db_queries.get_vehicle('AMB-1'))['status'] == 'available'
    assert registry.lookup_driver('d1') is None
    assert registry.lookup_driver('d2') == 'AMB-1'
    assert client.events(events.REMOVE_AMBULANCE) == []

    assert await coordinator.handle_driver_disconnect('d2') is True
    assert (await db_queries.get_vehicle('AMB-1'))['status'] == 'offline'
    assert len(client.events(events.REMOVE_AMBULANCE)) == 1


@pytest.mark.asyncio
async def test_disconnect_without_session_touches_nothing(db_path, coordinator, connect, connect_client, mocker):
    connect('d9')
    client = connect_client('c1')
    spy = mocker.spy(db_queries, 'update_vehicle_status')

    assert await coordinator.handle_driver_disconnect('d9') is False

    assert spy.call_count == 0
    assert client.messages == []


@pytest.mark.asyncio
async def test_disconnect_store_failure_sends_no_broadcast(online_driver, coordinator, registry, connect_client, mocker):
    client = connect_client('c1')
    mocker.patch('database.queries.update_vehicle_status', side_effect=StoreError())

    await coordinator.handle_driver_disconnect('d1')

    # Сессия снята, но без записи в базу клиентам ничего не сообщаем
    assert registry.lookup_driver('d1') is None
    assert client.messages == []


@pytest.mark.asyncio
async def test_client_disconnect_leaves_rooms(db_path, coordinator, registry, hub, verifier, connect_client):
    connect_client('c1')
    await coordinator.authenticate('c1', {'token': verifier.issue(1, Role.REQUESTER)})
    hub.join(request_room(1), 'c1')

    coordinator.handle_client_disconnect('c1')
    coordinator.handle_client_disconnect('c1')

    assert registry.identity_of('c1') is None
    assert hub.room_members(request_room(1)) == set()
    assert not hub.is_live('c1')
