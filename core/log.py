"""
core/log.py — 统一日志系统

• 控制台彩色输出，可选按大小轮转的文件日志（log.file）
• 每条日志带 trace_id：HTTP 请求由中间件写入，后台生成任务用 trace_ctx(task.id)
• 格式: 时间 [级别] [trace_id] 模块.函数:行号 - 消息
"""

import logging
import logging.handlers
import sys
import uuid
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Generator, Optional

import colorlog

from core.config import cfg

_trace_id: ContextVar[str] = ContextVar("trace_id", default="-")

FORMAT = "%(asctime)s [%(levelname)-5s] [%(trace_id)s] %(name)s.%(funcName)s:%(lineno)d - %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
LOG_COLORS = {
    "DEBUG": "cyan",
    "INFO": "green",
    "WARNING": "yellow",
    "ERROR": "red",
    "CRITICAL": "red,bg_white",
}

# uvicorn --reload 会重复导入，靠该标记保证只挂一次 handler
_HANDLER_MARKER = "_exam_bank_handler"


def _normalize_trace_id(value: Optional[str]) -> str:
    return str(value or "").strip()[:16] or uuid.uuid4().hex[:8]


def set_trace_id(value: Optional[str] = None) -> str:
    """为当前请求设置 trace_id，未传入时随机生成。"""
    trace_id = _normalize_trace_id(value)
    _trace_id.set(trace_id)
    return trace_id


@contextmanager
def trace_ctx(value: Optional[str] = None) -> Generator[str, None, None]:
    token = _trace_id.set(_normalize_trace_id(value))
    try:
        yield _trace_id.get()
    finally:
        _trace_id.reset(token)


class TraceIdFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        record.trace_id = _trace_id.get()
        return True


def _level_from_config() -> int:
    level = logging.getLevelName(str(cfg.get("log.level", "INFO") or "INFO").upper())
    return level if isinstance(level, int) else logging.INFO


def _mark(handler: logging.Handler, level: int) -> logging.Handler:
    handler.setLevel(level)
    handler.addFilter(TraceIdFilter())
    setattr(handler, _HANDLER_MARKER, True)
    return handler


def configure_logging() -> None:
    root = logging.getLogger()
    if any(getattr(h, _HANDLER_MARKER, False) for h in root.handlers):
        return
    level = _level_from_config()
    root.setLevel(level)

    console = colorlog.StreamHandler(stream=sys.stdout)
    console.setFormatter(colorlog.ColoredFormatter("%(log_color)s" + FORMAT, datefmt=DATE_FORMAT, log_colors=LOG_COLORS))
    root.addHandler(_mark(console, level))

    log_file = str(cfg.get("log.file", "") or "").strip()
    if log_file:
        rotating = logging.handlers.RotatingFileHandler(
            f"{log_file}.log",
            maxBytes=int(cfg.get("log.max_bytes", 5 * 1024 * 1024)),
            backupCount=int(cfg.get("log.backup_count", 7)),
            encoding="utf-8",
        )
        rotating.setFormatter(logging.Formatter(FORMAT, datefmt=DATE_FORMAT))
        root.addHandler(_mark(rotating, level))


configure_logging()


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)
