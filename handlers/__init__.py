# This file makes the 'handlers' directory a Python package.
from fastapi import APIRouter


def setup_routers():
    """
    Creates and configures all routers for the application.
    Routers are imported locally so that each call gets them fresh,
    which keeps test apps isolated.

    Возвращает два роутера:
    1. socket_router: WebSocket-каналы водителей и клиентов.
    2. health_router: HTTP-проверка состояния.
    """
    from . import client_socket, driver_socket, health

    socket_router = APIRouter()
    socket_router.include_router(driver_socket.router)
    socket_router.include_router(client_socket.router)

    return socket_router, health.router
