import json
import logging
import os
import sys
from datetime import date
from pathlib import Path

from loguru import logger
from pydantic import BaseModel

from notifyrules.config.settings import settings
from notifyrules.utils.context import get_request_id

# Standard library loggers routed through loguru
INTERCEPTED_LOGGERS = [
    "uvicorn",
    "uvicorn.error",
    "uvicorn.access",
    "fastapi",
    "celery",
    "celery.task",
    "sqlalchemy.engine",
]


class LoggingConfig(BaseModel):
    """One section of ``logging_config.json``"""

    log_dir: str = "logs"
    filename: str = "notifyrules.log"
    level: str = "info"
    rotation: str = "20 MB"
    retention: str = "14 days"
    console_format: str = (
        "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | <level>{level: <8}</level> | "
        "{extra[request_id]} | <cyan>{name}</cyan>:<cyan>{function}</cyan> - "
        "<level>{message}</level>"
    )
    file_format: str = (
        "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <8} | {extra[request_id]} | "
        "{name}:{function}:{line} - {message} | {extra}"
    )
    use_json_logs: bool = False

    @property
    def log_path(self) -> str:
        return f"{self.log_dir}/{date.today().strftime('%Y-%m-%d')}-{self.filename}"


class InterceptHandler(logging.Handler):
    def emit(self, record):
        try:
            level = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        frame, depth = logging.currentframe(), 2
        while frame and frame.f_code.co_filename == logging.__file__:
            frame = frame.f_back
            depth += 1

        logger.bind(request_id=get_request_id() or "app").opt(
            depth=depth, exception=record.exc_info
        ).log(level, record.getMessage())


def load_logging_config(config_path: Path, environment: str = "logger") -> LoggingConfig:
    """Read the section for ``environment``, or the defaults when the file is absent"""
    if not config_path.is_file():
        return LoggingConfig()
    with open(config_path) as config_file:
        sections = json.load(config_file)
    return LoggingConfig(**sections.get(environment, sections.get("logger", {})))


def configure_logging(config: LoggingConfig):
    logger.remove()
    logger.configure(extra={"request_id": "app"})

    level = config.level.upper()
    logger.add(
        sys.stdout,
        enqueue=True,
        backtrace=True,
        level=level,
        format=config.console_format,
        colorize=True,
    )

    file_sink = {
        "rotation": config.rotation,
        "retention": config.retention,
        "enqueue": True,
        "backtrace": True,
        "level": level,
        "colorize": False,
    }
    if config.use_json_logs:
        file_sink["serialize"] = True
    else:
        file_sink["format"] = config.file_format
    logger.add(config.log_path, **file_sink)

    logging.basicConfig(handlers=[InterceptHandler()], level=0)
    for log_name in INTERCEPTED_LOGGERS:
        logging.getLogger(log_name).handlers = [InterceptHandler()]
    # SQL echo stays off unless asked for
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)

    return logger


environment = (
    "production"
    if os.getenv("ENVIRONMENT", settings.ENVIRONMENT) == "production"
    else "logger"
)
custom_logger = configure_logging(
    load_logging_config(Path(settings.LOGGING_CONFIG_PATH), environment)
)


def get_logger():
    """Get the custom logger instance with request ID binding."""
    request_id = get_request_id() or "app"
    return custom_logger.bind(request_id=request_id)


def get_task_logger(request_id: str, task: str):
    """Logger for a Celery task run, bound to the id its caller passed in"""
    return custom_logger.bind(request_id=request_id, task=task)
