import logging
import sys
from loguru import logger

from config.config import BASE_DIR


def setup_logging(log_path=None):
    """
    Configures loguru with a console sink and a rotating file sink,
    and routes the standard logging module (aiogram, aiosqlite, apscheduler) into it.
    """
    class InterceptHandler(logging.Handler):
        def emit(self, record):
            logger_opt = logger.opt(depth=6, exception=record.exc_info)
            logger_opt.log(record.levelname, record.getMessage())

    def patcher(record):
        # Every record gets the context fields, including the ones coming from stdlib logging
        record["extra"].setdefault("user_id", "System")
        record["extra"].setdefault("session_id", "-")

    log_format = (
        "{time:YYYY-MM-DD HH:mm:ss} | {level:<8} | {name}:{function}:{line} | "
        "user_id={extra[user_id]} session={extra[session_id]} | {message}"
    )

    logger.configure(
        handlers=[
            {
                "sink": sys.stderr,
                "level": "INFO",
                "format": log_format,
            },
            {
                "sink": log_path or BASE_DIR / "logs" / "collection.log",
                "level": "INFO",
                "rotation": "10 MB",
                "compression": "zip",
                "enqueue": True,
                "backtrace": True,
                "diagnose": False,
                "format": log_format,
            },
        ],
        patcher=patcher,
        extra={}
    )

    logging.basicConfig(handlers=[InterceptHandler()], level=0, force=True)

    # Шумные логгеры
    logging.getLogger('apscheduler').setLevel(logging.WARNING)
    logging.getLogger('aiosqlite').setLevel(logging.WARNING)
    logging.getLogger('aiogram.event').setLevel(logging.WARNING)

    return logger
