"""
Structlog 日志配置模块

结账流程以事件名记录日志（checkout_*、payment_*），并在渲染前掩码凭证类字段。
"""
import logging
import json
from typing import Any, List, Optional

import structlog
from structlog.processors import TimeStamper, add_log_level, JSONRenderer
from structlog.dev import ConsoleRenderer
from structlog.contextvars import merge_contextvars
from structlog.stdlib import ProcessorFormatter

from core.config import settings


REDACTED = "***"

# 第三方 HTTP 客户端自身的请求日志与网关适配器的事件日志重复
_NOISY_LOGGERS = ("httpx", "httpcore")


def _redact(value: Any, keys: set) -> Any:
    if isinstance(value, dict):
        return {
            k: REDACTED if str(k).lower() in keys and v is not None else _redact(v, keys)
            for k, v in value.items()
        }
    return value


def redact_sensitive(_logger: Any, _method: str, event_dict: dict) -> dict:
    """掩码敏感字段（client_secret、签名、密钥等），嵌套的 details 字典同样处理。"""
    keys = set(settings.LOG_REDACT_KEYS)
    return _redact(event_dict, keys)


def get_renderer() -> Any:
    """DEBUG 下使用控制台渲染，其余环境输出 JSON 行。"""
    if settings.DEBUG:
        return ConsoleRenderer(colors=False)

    def _dumps(obj, default=None, **kwargs):
        return json.dumps(obj, ensure_ascii=False, default=default, **kwargs)
    return JSONRenderer(serializer=_dumps)


def configure_logging(level: Optional[str] = None) -> None:
    """配置 structlog 并桥接标准库 logging 到同一处理链。"""
    shared_pre_chain: List[Any] = [
        merge_contextvars,
        add_log_level,
        TimeStamper(fmt="iso"),
        redact_sensitive,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    structlog.configure(
        processors=[
            *shared_pre_chain,
            ProcessorFormatter.wrap_for_formatter,
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler()
    handler.setFormatter(
        ProcessorFormatter(
            foreign_pre_chain=shared_pre_chain,
            processors=[
                ProcessorFormatter.remove_processors_meta,
                get_renderer(),
            ],
        )
    )

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel((level or settings.LOG_LEVEL or ("DEBUG" if settings.DEBUG else "INFO")).upper())
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str = __name__) -> structlog.stdlib.BoundLogger:
    """获取 structlog logger 实例。"""
    return structlog.get_logger(name)


# 初始化配置
configure_logging()
