"""日志配置模块：统一控制台/文件输出格式，并把请求 ID 注入每条日志。"""

import json
import logging
import logging.config
import sys
from contextvars import ContextVar
from datetime import datetime
from typing import Any, Optional

from .config import Settings, get_settings

LOG_FORMAT = "%(asctime)s %(levelname)-8s %(name)s [%(request_id)s] %(message)s"

_request_id_ctx: ContextVar[Optional[str]] = ContextVar("request_id", default=None)


class TimezoneFormatter(logging.Formatter):
    """按配置时区渲染时间戳；未指定 datefmt 时输出带毫秒的 ISO-8601。"""

    def formatTime(self, record: logging.LogRecord, datefmt: Optional[str] = None) -> str:
        stamp = datetime.fromtimestamp(record.created, get_settings().timezone_info)
        if datefmt:
            return stamp.strftime(datefmt)
        return stamp.isoformat(sep=" ", timespec="milliseconds")


class ColorFormatter(TimezoneFormatter):
    """终端输出时按级别给级别名着色。"""

    RESET = "\033[0m"
    LEVEL_COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[1;41m",
    }

    def __init__(self, fmt: str = LOG_FORMAT, datefmt: Optional[str] = None, use_colors: Optional[bool] = None):
        super().__init__(fmt=fmt, datefmt=datefmt)
        self.use_colors = sys.stderr.isatty() if use_colors is None else use_colors

    def format(self, record: logging.LogRecord) -> str:
        color = self.LEVEL_COLORS.get(record.levelname) if self.use_colors else None
        if not color:
            return super().format(record)
        original = record.levelname
        record.levelname = f"{color}{original}{self.RESET}"
        try:
            return super().format(record)
        finally:
            record.levelname = original


class JsonFormatter(TimezoneFormatter):
    """每行一个 JSON 对象，便于日志平台采集。"""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "ts": self.formatTime(record),
            "level": record.levelname,
            "logger": record.name,
            "request_id": getattr(record, "request_id", None),
            "msg": record.getMessage(),
            "where": f"{record.module}:{record.lineno}",
        }
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False)


class RequestIdFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        record.request_id = _request_id_ctx.get() or "-"
        return True


def _build_logging_config(settings: Settings) -> dict[str, Any]:
    level = settings.log_level.upper()
    console_formatter = "json" if settings.log_json else "console"
    handlers: dict[str, Any] = {
        "console": {
            "class": "logging.StreamHandler",
            "level": level,
            "formatter": console_formatter,
            "filters": ["request_id"],
        },
        "file": {
            "class": "logging.handlers.TimedRotatingFileHandler",
            "level": level,
            "formatter": "json" if settings.log_json else "plain",
            "filters": ["request_id"],
            "filename": str(settings.log_file_path),
            "when": "midnight",
            "backupCount": 14,
            "encoding": "utf-8",
            "delay": True,
        },
    }
    handler_names = list(handlers)
    own_logger = {"handlers": handler_names, "level": level, "propagate": False}

    return {
        "version": 1,
        "disable_existing_loggers": False,
        "filters": {"request_id": {"()": f"{__name__}.RequestIdFilter"}},
        "formatters": {
            "console": {"()": f"{__name__}.ColorFormatter", "fmt": LOG_FORMAT},
            "plain": {"()": f"{__name__}.TimezoneFormatter", "fmt": LOG_FORMAT},
            "json": {"()": f"{__name__}.JsonFormatter"},
        },
        "handlers": handlers,
        "loggers": {
            "app": own_logger,
            "uvicorn": own_logger,
            "uvicorn.error": own_logger,
            "uvicorn.access": own_logger,
            # SQL 回显由 DATABASE_ECHO 控制，这里避免重复输出
            "sqlalchemy.engine": {"level": "WARNING"},
        },
        "root": {"handlers": handler_names, "level": level},
    }


def setup_logging() -> None:
    """初始化日志系统，确保项目所有模块使用统一的输出格式与级别。"""
    settings = get_settings()
    settings.log_directory.mkdir(parents=True, exist_ok=True)
    logging.config.dictConfig(_build_logging_config(settings))


logger = logging.getLogger("app")


def set_request_id(request_id: Optional[str]) -> None:
    _request_id_ctx.set(request_id)


def get_request_id() -> Optional[str]:
    return _request_id_ctx.get()
