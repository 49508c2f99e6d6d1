from contextlib import asynccontextmanager
from datetime import timedelta

import uvicorn
from fastapi import FastAPI
from loguru import logger

from config.config import (
    HOST, JWT_ALGORITHM, JWT_SECRET, PENDING_STALE_MINUTES, PORT,
    REQUIRE_DRIVER_AUTH, STRICT_REQUEST_STATUS,
)
from config.logging_config import setup_logging
from database.db import init_db
from dispatch.coordinator import DispatchCoordinator
from dispatch.fanout import NotificationHub
from dispatch.registry import SessionRegistry
from dispatch.scheduler import setup_scheduler
from handlers import setup_routers
from server_manager import safe_server_start
from utils.auth import TokenVerifier


def build_coordinator() -> DispatchCoordinator:
    """Собирает реестр, fan-out и координатор из конфигурации."""
    return DispatchCoordinator(
        registry=SessionRegistry(),
        hub=NotificationHub(),
        verifier=TokenVerifier(JWT_SECRET, JWT_ALGORITHM),
        require_driver_auth=REQUIRE_DRIVER_AUTH,
        strict_request_status=STRICT_REQUEST_STATUS,
        stale_after=timedelta(minutes=PENDING_STALE_MINUTES),
    )


def create_app(coordinator: DispatchCoordinator | None = None, start_scheduler: bool = True) -> FastAPI:
    coordinator = coordinator or build_coordinator()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Ініціалізація бази даних...")
        await init_db()
        logger.info("Базу даних ініціалізовано.")

        coordinator.registry.start()
        scheduler = None
        if start_scheduler:
            scheduler = setup_scheduler(coordinator)
            scheduler.start()
        # Кеш очікуючих викликів відновлюється зі сховища одразу, а не через інтервал
        await coordinator.resync_pending()

        try:
            yield
        finally:
            logger.info("Початок коректного завершення роботи сервера...")
            if scheduler and scheduler.running:
                scheduler.shutdown(wait=False)
                logger.info("Планувальник зупинено")
            coordinator.registry.stop()
            logger.info("Коректне завершення роботи завершено.")

    app = FastAPI(title="Ambulance Dispatch", lifespan=lifespan)
    app.state.coordinator = coordinator

    socket_router, health_router = setup_routers()
    app.include_router(socket_router)
    app.include_router(health_router)
    return app


def run():
    setup_logging()
    app = create_app()
    # log_config=None: логи uvicorn перехоплює InterceptHandler
    safe_server_start(lambda: uvicorn.run(app, host=HOST, port=PORT, log_config=None))


if __name__ == '__main__':
    run()
