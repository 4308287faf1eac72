"""structlog 配置模块

dev 模式：pretty print 可读输出
json 模式：结构化 JSON 输出

日志只是运行遥测；审计日志是权威记录，不依赖这里的配置。
"""

import logging

import structlog


def setup_logging(level: str = "info", fmt: str = "dev") -> None:
    """初始化 structlog 配置

    Args:
        level: 日志级别（debug/info/warning/error）
        fmt: "json" 结构化输出（生产环境），"dev" 可读输出
    """
    shared_processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    if fmt == "json":
        renderer: structlog.types.Processor = structlog.processors.JSONRenderer(
            ensure_ascii=False
        )
    else:
        renderer = structlog.dev.ConsoleRenderer()

    structlog.configure(
        processors=[
            *shared_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    formatter = structlog.stdlib.ProcessorFormatter(
        processor=renderer,
        foreign_pre_chain=shared_processors,
    )

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(getattr(logging, level.upper(), logging.INFO))

    # watchdog 的 debug 输出过于冗长
    logging.getLogger("watchdog").setLevel(logging.WARNING)
