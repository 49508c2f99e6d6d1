import asyncio

import pytest
import pytest_asyncio

from database import queries as db_queries
from dispatch import events
from dispatch.exceptions import RequestUnavailable

EMERGENCY = {'userId': 1, 'location': {'latitude': 50.45, 'longitude': 30.52}}


@pytest_asyncio.fixture
async def fleet(db_path):
    """Фикстура: пять машин AMB-1..AMB-5."""
    for n in range(1, 6):
        await db_queries.register_driver(f'Driver {n}', f'd{n}@example.com', 'hash', f'AMB-{n}')


@pytest.mark.asyncio
async def test_two_drivers_race_for_one_request(fleet, coordinator, registry, connect, connect_client):
    client = connect_client('c1')
    connect('d1')
    connect('d2')
    request = await coordinator.submit_request('c1', EMERGENCY)

    results = await asyncio.gather(
        coordinator.accept_request('d1', {'requestId': request['id'], 'vehicleId': 'AMB-1'}),
        coordinator.accept_request('d2', {'requestId': request['id'], 'vehicleId': 'AMB-2'}),
        return_exceptions=True,
    )

    winners = [r for r in results if isinstance(r, dict)]
    losers = [r for r in results if isinstance(r, RequestUnavailable)]
    assert len(winners) == 1
    assert len(losers) == 1
    assert losers[0].message == "Request no longer available"

    stored = await db_queries.get_request(request['id'])
    assert stored['status'] == 'accepted'
    assert stored['vehicleId'] == winners[0]['vehicleId']
    assert registry.pending_entry(request['id']) is None

    # Клиент получает ровно одно уведомление, с машиной-победителем
    notices = client.events(events.REQUEST_ACCEPTED)
    assert len(notices) == 1
    assert notices[0]['data']['vehicleId'] == winners[0]['vehicleId']


@pytest.mark.asyncio
async def test_many_drivers_one_winner(fleet, coordinator, connect, connect_client):
    connect_client('c1')
    for n in range(1, 6):
        connect(f'd{n}')
    request = await coordinator.submit_request('c1', EMERGENCY)

    results = await asyncio.gather(*(
        coordinator.accept_request(f'd{n}', {'requestId': request['id'], 'vehicleId': f'AMB-{n}'})
        for n in range(1, 6)
    ), return_exceptions=True)

    assert sum(isinstance(r, dict) for r in results) == 1
    assert sum(isinstance(r, RequestUnavailable) for r in results) == 4

    en_route = [
        vehicle_id for vehicle_id in (f'AMB-{n}' for n in range(1, 6))
        if (await db_queries.get_vehicle(vehicle_id))['status'] == 'en_route'
    ]
    assert len(en_route) == 1


@pytest.mark.asyncio
async def test_race_with_pending_refresh(fleet, coordinator, registry, connect, connect_client):
    connect_client('c1')
    connect('d1')
    connect('d2')
    request = await coordinator.submit_request('c1', EMERGENCY)

    # Обновление списка во время принятия не дает второму водителю принять вызов
    results = await asyncio.gather(
        coordinator.accept_request('d1', {'requestId': request['id'], 'vehicleId': 'AMB-1'}),
        coordinator.list_pending('d2'),
        coordinator.resync_pending(),
        return_exceptions=True,
    )

    assert isinstance(results[0], dict)
    with pytest.raises(RequestUnavailable):
        await coordinator.accept_request('d2', {'requestId': request['id'], 'vehicleId': 'AMB-2'})
