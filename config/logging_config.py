import logging
import sys
from loguru import logger

from config.config import LOG_DIR

def setup_logging():
    """
    Настраивает loguru для записи в консоль и в файлы с ротацией.
    """
    class InterceptHandler(logging.Handler):
        def emit(self, record):
            logger_opt = logger.opt(depth=6, exception=record.exc_info)
            logger_opt.log(record.levelname, record.getMessage())

    def patcher(record):
        # Applied to every record, including the ones intercepted from stdlib logging.
        record["extra"].setdefault("connection_id", "System")
        record["extra"].setdefault("channel", "-")

    log_format = (
        "{time:YYYY-MM-DD HH:mm:ss} | {level:<8} | {name}:{function}:{line} | "
        "conn={extra[connection_id]} ({extra[channel]}) | {message}"
    )

    logger.configure(
        handlers=[
            {
                "sink": sys.stderr,
                "level": "INFO",
                "format": log_format,
            },
            {
                "sink": LOG_DIR / "dispatch.log",
                "level": "INFO",
                "rotation": "10 MB",
                "compression": "zip",
                "enqueue": True,
                "backtrace": True,
                "diagnose": True,
                "format": log_format,
            },
        ],
        patcher=patcher,
        extra={}
    )

    logging.basicConfig(handlers=[InterceptHandler()], level=0, force=True)

    # Устанавливаем более высокий уровень для "шумных" логгеров
    logging.getLogger('apscheduler').setLevel(logging.WARNING)
    logging.getLogger('aiosqlite').setLevel(logging.WARNING)
    logging.getLogger('uvicorn.access').setLevel(logging.WARNING)

    return logger
