from fastapi import APIRouter, Request

router = APIRouter()


@router.get('/health')
async def health(request: Request):
    coordinator = request.app.state.coordinator
    registry_stats = coordinator.registry.stats()
    return {
        'status': 'ok' if coordinator.registry.running else 'stopped',
        'drivers': registry_stats['drivers'],
        'pendingRequests': registry_stats['pendingRequests'],
        'connections': coordinator.hub.stats()['connections'],
    }
