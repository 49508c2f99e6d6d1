#!/usr/bin/env python3
"""
Простой менеджер для управления сервером диспетчеризации.
Реестр сессий живет в памяти процесса, поэтому одновременно
может работать только один экземпляр.
"""
import os
from pathlib import Path
import psutil
from loguru import logger

from config.config import BASE_DIR

class ServerManager:
    """Простой менеджер сервера на основе файла блокировки."""

    def __init__(self, lock_file: Path | None = None):
        self.lock_file = lock_file or BASE_DIR / "server.lock"

    def is_running(self) -> bool:
        """Проверяет, существует ли файл блокировки."""
        return self.lock_file.exists()

    def get_pid(self) -> int | None:
        """Читает PID из файла блокировки."""
        if not self.is_running():
            return None
        try:
            with open(self.lock_file, 'r') as f:
                pid = int(f.read().strip())
            return pid
        except (IOError, ValueError) as e:
            logger.error(f"Ошибка чтения PID из файла блокировки: {e}")
            return None

    def create_lock(self) -> bool:
        """Создает файл блокировки."""
        # Проверка на "устаревший" lock-файл
        pid = self.get_pid()
        if pid and psutil.pid_exists(pid):
            logger.warning(f"Сервер уже запущен с PID {pid}.")
            return False
        elif pid:
            logger.warning(f"Найден устаревший файл блокировки с неактивным PID {pid}. Удаляю его.")
            self.remove_lock()
        elif self.is_running() and not pid:
            logger.warning("Найден поврежденный файл блокировки. Удаляю его.")
            self.remove_lock()

        try:
            with open(self.lock_file, 'w') as f:
                f.write(str(os.getpid()))
            logger.info("Создан файл блокировки")
            return True
        except OSError as e:
            logger.error(f"Ошибка создания блокировки: {e}")
            return False

    def remove_lock(self):
        """Удаляет файл блокировки."""
        try:
            if self.lock_file.exists():
                self.lock_file.unlink()
                logger.info("Файл блокировки удален")
        except OSError as e:
            logger.error(f"Ошибка удаления блокировки: {e}")

# Глобальный экземпляр
server_manager = ServerManager()

def safe_server_start(start_func, manager: ServerManager = server_manager) -> bool:
    """Безопасный запуск сервера: не более одного процесса на файл блокировки."""
    if not manager.create_lock():
        return False
    try:
        logger.info("Запуск сервера...")
        start_func()
    except KeyboardInterrupt:
        logger.info("Получен сигнал остановки")
    finally:
        manager.remove_lock()
        logger.info("Сервер остановлен")
    return True

def force_stop_server(manager: ServerManager = server_manager):
    """Принудительно останавливает процесс сервера."""
    pid = manager.get_pid()
    if not pid:
        logger.info("Файл блокировки не найден. Возможно, сервер не запущен.")
        print("✅ Сервер не запущен.")
        return

    try:
        if psutil.pid_exists(pid):
            process = psutil.Process(pid)
            # Сначала пытаемся завершить грациозно
            process.terminate()
            logger.info(f"Отправлен сигнал terminate процессу с PID {pid}")
            print(f"Отправлен сигнал на остановку процессу {pid}...")

            try:
                # Ждем недолго, чтобы uvicorn успел отработать lifespan shutdown
                process.wait(timeout=5)
                logger.info(f"Процесс {pid} успешно завершен.")
                print("✅ Процесс сервера успешно остановлен.")
            except psutil.TimeoutExpired:
                logger.warning(f"Процесс {pid} не завершился. Принудительная остановка (kill).")
                process.kill()
                process.wait()
                logger.info(f"Процесс {pid} принудительно остановлен.")
                print("✅ Процесс сервера принудительно остановлен.")
        else:
            logger.warning(f"Процесс с PID {pid} не найден, но файл блокировки существует.")
            print("ℹ️ Процесс сервера не найден, но остался файл блокировки.")
    except psutil.NoSuchProcess:
        logger.warning(f"Процесс с PID {pid} уже не существует.")
        print("ℹ️ Процесс сервера уже не существует.")
    finally:
        manager.remove_lock()

if __name__ == '__main__':
    import sys
    if len(sys.argv) > 1 and sys.argv[1] == 'stop':
        force_stop_server()
    else:
        print("Использование: python server_manager.py stop")
