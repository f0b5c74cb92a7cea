"""结构化日志系统 - 基于 structlog"""
import structlog
import logging
import sys
from pathlib import Path
from datetime import datetime
from typing import Optional
import contextvars

# 上下文变量：用于在一次发送消息的整个链路中传递追踪信息
request_id_var = contextvars.ContextVar("request_id", default=None)
conversation_id_var = contextvars.ContextVar("conversation_id", default=None)
message_id_var = contextvars.ContextVar("message_id", default=None)


def add_context_info(logger, method_name, event_dict):
    """添加上下文信息到日志"""
    request_id = request_id_var.get()
    conversation_id = conversation_id_var.get()
    message_id = message_id_var.get()

    if request_id:
        event_dict.setdefault("request_id", request_id)
    if conversation_id:
        event_dict.setdefault("conversation_id", conversation_id)
    if message_id:
        event_dict.setdefault("message_id", message_id)

    return event_dict


def setup_structured_logging(
    log_level: str = "INFO",
    log_dir: Optional[str] = "logs",
    enable_json: bool = True,
    enable_console: bool = True
):
    """
    配置结构化日志系统

    Args:
        log_level: 日志级别（DEBUG/INFO/WARNING/ERROR）
        log_dir: 日志目录，为 None 时不写文件
        enable_json: 是否输出JSON格式（生产环境推荐）
        enable_console: 是否输出到控制台（开发环境推荐）
    """
    level = getattr(logging, log_level.upper())

    # 配置标准库logging（作为底层）
    # 清除现有handlers
    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    formatter = logging.Formatter('%(message)s')

    # 添加控制台handler
    if enable_console:
        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setLevel(level)
        console_handler.setFormatter(formatter)
        root_logger.addHandler(console_handler)

    if log_dir:
        log_path = Path(log_dir)
        log_path.mkdir(parents=True, exist_ok=True)

        # 生成日志文件名（按日期）
        date_str = datetime.now().strftime("%Y%m%d")

        # 文件handler（所有级别）
        file_handler = logging.FileHandler(log_path / f"app_{date_str}.log", encoding='utf-8')
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(formatter)
        root_logger.addHandler(file_handler)

        # 错误日志handler（只记录ERROR及以上）
        error_handler = logging.FileHandler(log_path / f"app_error_{date_str}.log", encoding='utf-8')
        error_handler.setLevel(logging.ERROR)
        error_handler.setFormatter(formatter)
        root_logger.addHandler(error_handler)

    root_logger.setLevel(level)

    # 静默第三方库的调试日志（减少噪音）
    noisy_loggers = [
        'aiosqlite',
        'sqlite3',
        'httpx',
        'httpcore',
        'asyncio',
        'openai',
        'langchain_core',
        'langchain_openai',
    ]

    for logger_name in noisy_loggers:
        logging.getLogger(logger_name).setLevel(logging.WARNING)

    # 配置structlog处理器链
    shared_processors = [
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        add_context_info,
        structlog.processors.CallsiteParameterAdder(
            {
                structlog.processors.CallsiteParameter.FILENAME,
                structlog.processors.CallsiteParameter.LINENO,
                structlog.processors.CallsiteParameter.FUNC_NAME,
            }
        ),
        structlog.processors.format_exc_info,
    ]

    if enable_json:
        processors = shared_processors + [structlog.processors.JSONRenderer(ensure_ascii=False)]
    else:
        processors = shared_processors + [structlog.dev.ConsoleRenderer(colors=True)]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    get_logger(__name__).info(
        "结构化日志已启用",
        log_level=log_level,
        log_dir=str(Path(log_dir).absolute()) if log_dir else None,
        format="json" if enable_json else "console",
    )


def get_logger(name: str = None) -> structlog.BoundLogger:
    """
    获取结构化日志记录器

    Args:
        name: 日志器名称（通常是模块名）
    """
    return structlog.get_logger(name)


class LogContext:
    """日志上下文管理器 - 用于在代码块中设置追踪信息"""

    def __init__(
        self,
        request_id: Optional[str] = None,
        conversation_id: Optional[str] = None,
        message_id: Optional[str] = None,
    ):
        self.request_id = request_id
        self.conversation_id = conversation_id
        self.message_id = message_id
        self._tokens = []

    def __enter__(self):
        """进入上下文"""
        if self.request_id:
            self._tokens.append((request_id_var, request_id_var.set(self.request_id)))
        if self.conversation_id:
            self._tokens.append((conversation_id_var, conversation_id_var.set(self.conversation_id)))
        if self.message_id:
            self._tokens.append((message_id_var, message_id_var.set(self.message_id)))
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """退出上下文（恢复旧值）"""
        while self._tokens:
            var, token = self._tokens.pop()
            try:
                var.reset(token)
            except ValueError:
                # 异步生成器被终结器关闭时在上下文副本中退出，副本无需恢复
                var.set(None)
