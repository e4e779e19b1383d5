"""Centralized logging configuration."""

import logging
import sys

from loguru import logger

from eventbook.settings import Settings

log_format = ' | '.join(
    (
        '<lk>{time:YYYY-MM-DD HH:mm:ss.SSS}</>',
        '<lvl>{level:<8}</>',
        '<c>{file}::{function}:{line}</>',
        '{message}',
    )
)


class InterceptHandler(logging.Handler):
    """Route standard logging records (uvicorn, sqlalchemy) into loguru."""

    def emit(self, record: logging.LogRecord) -> None:
        try:
            level: str | int = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        # Find caller from where originated the logged message
        frame, depth = logging.currentframe(), 2
        while frame and frame.f_code.co_filename == logging.__file__:
            frame = frame.f_back
            depth += 1

        logger.opt(depth=depth, exception=record.exc_info).log(
            level, record.getMessage()
        )


def configure_logging(settings: Settings) -> None:
    logger.remove()
    logger.add(sys.stdout, format=log_format, level=settings.LOG_LEVEL)

    if settings.LOG_DIR:
        logger.add(
            f'{settings.LOG_DIR}/eventbook_{{time:YYYY-MM-DD}}.log',
            format=log_format,
            level=settings.LOG_LEVEL,
            rotation='1 day',
            retention='30 days',
            compression='zip',
            enqueue=True,
        )

    logging.basicConfig(handlers=[InterceptHandler()], level=0, force=True)
