"""
WebSocket 中继 - 日志管理模块

版本: 1.0.0

功能概述:
本模块提供了日志管理功能，包括：
1. 多级别日志记录（DEBUG, INFO, WARNING, ERROR, CRITICAL）
2. 日志轮转（按日期/大小）
3. 结构化日志格式（时间戳、级别、会话上下文）
4. 配置文件和环境变量支持

会话上下文保存在 ContextVar 中，每个会话任务拥有独立的副本，
并发会话之间的上下文互不干扰。
"""

import contextvars
import logging
import logging.handlers
import os
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

DEFAULT_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - [%(context)s] - %(message)s"

_session_context: contextvars.ContextVar = contextvars.ContextVar('ws_relay_log_context', default={})


@dataclass
class LogConfig:
    """
    日志配置数据类

    Attributes:
        level: 日志级别（DEBUG, INFO, WARNING, ERROR, CRITICAL）
        log_dir: 日志存储目录
        log_file: 日志文件名
        max_bytes: 单个日志文件最大大小（字节）
        backup_count: 保留的备份文件数量
        rotation_type: 轮转类型（size, date, none）
        format_string: 日志格式字符串
        enable_console: 是否输出到控制台
        enable_file: 是否输出到文件
        context_fields: 上下文字段列表
    """
    level: str = "INFO"
    log_dir: str = "logs"
    log_file: str = "ws-relay.log"
    max_bytes: int = 10 * 1024 * 1024  # 10MB
    backup_count: int = 5
    rotation_type: str = "size"
    format_string: str = DEFAULT_FORMAT
    enable_console: bool = True
    enable_file: bool = False
    context_fields: list = None

    def __post_init__(self):
        if self.context_fields is None:
            self.context_fields = ["session_id", "peer"]

    @classmethod
    def from_mapping(cls, data: Optional[Mapping[str, Any]], env: Optional[Mapping[str, str]] = None) -> 'LogConfig':
        """
        从配置段和环境变量构建日志配置（环境变量优先）

        Args:
            data: 配置文件中的 logging 段
            env: 环境变量映射，默认 os.environ

        Returns:
            LogConfig: 日志配置对象
        """
        data = data or {}
        env = os.environ if env is None else env

        def pick(env_name, key, default):
            value = env.get(env_name)
            if value is None or value == '':
                value = data.get(key, default)
            return value

        def pick_bool(env_name, key, default):
            return str(pick(env_name, key, default)).lower() == 'true'

        return cls(
            level=str(pick('LOG_LEVEL', 'level', 'INFO')),
            log_dir=str(pick('LOG_DIR', 'log_dir', 'logs')),
            log_file=str(pick('LOG_FILE', 'log_file', 'ws-relay.log')),
            max_bytes=int(pick('LOG_MAX_BYTES', 'max_bytes', 10 * 1024 * 1024)),
            backup_count=int(pick('LOG_BACKUP_COUNT', 'backup_count', 5)),
            rotation_type=str(pick('LOG_ROTATION_TYPE', 'rotation_type', 'size')),
            format_string=str(pick('LOG_FORMAT', 'format_string', DEFAULT_FORMAT)),
            enable_console=pick_bool('LOG_ENABLE_CONSOLE', 'enable_console', True),
            enable_file=pick_bool('LOG_ENABLE_FILE', 'enable_file', False),
            context_fields=data.get('context_fields'),
        )


class ContextFilter(logging.Filter):
    """
    上下文过滤器

    为日志记录添加当前任务的会话上下文
    """

    def __init__(self, context_fields: list = None):
        super().__init__()
        self.context_fields = context_fields or []

    def filter(self, record):
        context = _session_context.get()
        record.context = " | ".join(
            f"{name}={context.get(name, '-')}" for name in self.context_fields
        ) or "-"
        return True


class LogFormatter(logging.Formatter):
    """
    自定义日志格式化器

    支持彩色输出
    """

    COLORS = {
        'DEBUG': '\033[36m',      # 青色
        'INFO': '\033[32m',       # 绿色
        'WARNING': '\033[33m',    # 黄色
        'ERROR': '\033[31m',      # 红色
        'CRITICAL': '\033[35m',   # 紫色
    }
    RESET = '\033[0m'

    def __init__(self, fmt=None, datefmt=None, style='%', use_color=False):
        super().__init__(fmt, datefmt, style)
        self.use_color = use_color

    def format(self, record):
        # 未经过 ContextFilter 的记录（例如第三方 logger）
        if not hasattr(record, 'context'):
            record.context = "-"

        levelname = record.levelname
        if self.use_color and levelname in self.COLORS:
            record.levelname = f"{self.COLORS[levelname]}{levelname}{self.RESET}"
        try:
            return super().format(record)
        finally:
            record.levelname = levelname


class LoggerManager:
    """
    日志管理器

    管理日志系统的初始化和配置（单例）
    """

    _instance = None
    _initialized = False

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __init__(self):
        if not self._initialized:
            self.config: Optional[LogConfig] = None
            self.context_filter: Optional[ContextFilter] = None
            self._initialized = True

    def initialize(self, config: Optional[LogConfig] = None):
        """
        初始化日志系统

        Args:
            config: 日志配置对象，为空时从环境变量构建
        """
        self.config = config or LogConfig.from_mapping(None)
        level = getattr(logging, self.config.level.upper(), logging.INFO)

        root_logger = logging.getLogger()
        root_logger.setLevel(level)
        for handler in list(root_logger.handlers):
            root_logger.removeHandler(handler)
            handler.close()

        self.context_filter = ContextFilter(self.config.context_fields)

        if self.config.enable_console:
            console_handler = logging.StreamHandler(sys.stdout)
            console_handler.setFormatter(LogFormatter(
                fmt=self.config.format_string,
                datefmt='%Y-%m-%d %H:%M:%S',
                use_color=sys.stdout.isatty()
            ))
            self._attach(root_logger, console_handler, level)

        if self.config.enable_file:
            self._attach(root_logger, self._create_file_handler(), level)

    def _attach(self, logger: logging.Logger, handler: logging.Handler, level: int):
        # 过滤器挂在 handler 上，子 logger 传播上来的记录同样带上下文
        handler.setLevel(level)
        handler.addFilter(self.context_filter)
        logger.addHandler(handler)

    def _create_file_handler(self) -> logging.Handler:
        """
        创建文件处理器（支持轮转）

        Returns:
            logging.Handler: 文件处理器
        """
        log_dir = Path(self.config.log_dir)
        log_dir.mkdir(parents=True, exist_ok=True)
        log_file_path = log_dir / self.config.log_file

        if self.config.rotation_type == 'size':
            handler = logging.handlers.RotatingFileHandler(
                filename=log_file_path,
                maxBytes=self.config.max_bytes,
                backupCount=self.config.backup_count,
                encoding='utf-8'
            )
        elif self.config.rotation_type == 'date':
            handler = logging.handlers.TimedRotatingFileHandler(
                filename=log_file_path,
                when='midnight',
                interval=1,
                backupCount=self.config.backup_count,
                encoding='utf-8'
            )
        else:
            handler = logging.FileHandler(filename=log_file_path, encoding='utf-8')

        handler.setFormatter(LogFormatter(
            fmt=self.config.format_string,
            datefmt='%Y-%m-%d %H:%M:%S',
            use_color=False
        ))
        return handler

    def set_level(self, level: int):
        """调整根 logger 及其处理器的级别（--debug 使用）"""
        root_logger = logging.getLogger()
        root_logger.setLevel(level)
        for handler in root_logger.handlers:
            handler.setLevel(level)


def add_context(**kwargs):
    """
    为当前任务添加上下文信息

    Args:
        **kwargs: 上下文键值对
    """
    context: Dict[str, Any] = dict(_session_context.get())
    context.update(kwargs)
    _session_context.set(context)


def clear_context():
    """
    清除当前任务的上下文信息
    """
    _session_context.set({})


def get_context() -> Dict[str, Any]:
    """返回当前任务的上下文副本"""
    return dict(_session_context.get())
