"""structlog 配置模块

dev 模式：pretty print 可读输出
json 模式：结构化 JSON 输出，适合嵌入宿主应用的日志管道

websockets / httpx / aiosqlite 的库日志默认提升到 WARNING，
避免每个帧、每个请求都打一行。
"""

import logging
import os

import structlog

NOISY_LOGGERS = ("websockets", "httpx", "httpcore", "aiosqlite")


def setup_logging(
    log_format: str | None = None,
    log_level: str | None = None,
    library_level: int = logging.WARNING,
) -> None:
    """初始化 structlog 配置

    Args:
        log_format: "json" 或 "dev"；缺省读取 CONVOSYNC_LOG_FORMAT
        log_level: 根 logger 级别名；缺省读取 CONVOSYNC_LOG_LEVEL（默认 INFO）
        library_level: 第三方库 logger 的级别
    """
    log_format = log_format or os.environ.get("CONVOSYNC_LOG_FORMAT", "dev")
    log_level = log_level or os.environ.get("CONVOSYNC_LOG_LEVEL", "INFO")

    shared_processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]

    renderer: structlog.types.Processor
    if log_format == "json":
        renderer = structlog.processors.JSONRenderer(ensure_ascii=False)
    else:
        renderer = structlog.dev.ConsoleRenderer()

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            *shared_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler()
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            processors=[
                structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                renderer,
            ],
            foreign_pre_chain=shared_processors,
        )
    )

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(getattr(logging, log_level.upper(), logging.INFO))

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(library_level)


def bind_session_context(conversation_id: str | None, model_id: str | None = None) -> None:
    """将会话上下文绑定到 structlog contextvars，后续日志自动携带"""
    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(conversation_id=conversation_id, model_id=model_id)
