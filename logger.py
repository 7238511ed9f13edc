"""
HTTPS 转发代理 - 日志管理模块

版本: 1.0.0

提供代理各模块共用的日志设施：
- 控制台输出（终端下彩色显示级别）
- 文件输出，可按大小或按天轮转
- 可选的 systemd journal 输出
- 每条日志附带当前请求的上下文（目标主机、客户端地址）

配置来自配置文件的 logging 段，同名的 LOG_* 环境变量优先。

上下文保存在 contextvars 中。每个 asyncio 任务持有自己的副本，
并发处理的请求之间互不覆盖。
"""

import contextvars
import logging
import logging.handlers
import os
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

try:
    from systemd.journal import JournalHandler
    HAS_JOURNAL = True
except ImportError:
    HAS_JOURNAL = False


DEFAULT_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - [%(context)s] - %(message)s"
DATE_FORMAT = '%Y-%m-%d %H:%M:%S'

_log_context: contextvars.ContextVar = contextvars.ContextVar('log_context', default={})


@dataclass
class LogConfig:
    """
    日志配置

    Attributes:
        level: 根日志级别名称
        log_dir: 日志文件所在目录
        log_file: 日志文件名
        max_bytes: 按大小轮转时单个文件的上限（字节）
        backup_count: 轮转后保留的旧文件个数
        rotation_type: size（按大小）、date（每天午夜）或 none（不轮转）
        format_string: 日志格式，可使用 %(context)s
        enable_console: 输出到标准输出
        enable_file: 输出到文件
        enable_journal: 输出到 systemd journal（需要 systemd-python）
        context_fields: 写入 %(context)s 的上下文字段，按顺序排列
    """
    level: str = "INFO"
    log_dir: str = "logs"
    log_file: str = "forward-proxy.log"
    max_bytes: int = 10 * 1024 * 1024
    backup_count: int = 10
    rotation_type: str = "size"
    format_string: str = DEFAULT_FORMAT
    enable_console: bool = True
    enable_file: bool = False
    enable_journal: bool = False
    context_fields: list = None

    def __post_init__(self):
        if self.context_fields is None:
            self.context_fields = ["host", "peer"]


def _env_bool(name: str, default) -> bool:
    return os.getenv(name, str(default)).lower() == 'true'


class ContextFilter(logging.Filter):
    """把当前任务的上下文拼成 record.context，例如 "host=example.com:443 | peer=-" """

    def __init__(self, context_fields: list = None):
        super().__init__()
        self.context_fields = context_fields or []

    def filter(self, record):
        values = _log_context.get()
        record.context = " | ".join(
            f"{name}={values.get(name, '-')}" for name in self.context_fields
        ) or "-"
        return True


class LogFormatter(logging.Formatter):
    """格式化器：补齐缺失的 context 字段，并可为级别名着色"""

    COLORS = {
        'DEBUG': '\033[36m',
        'INFO': '\033[32m',
        'WARNING': '\033[33m',
        'ERROR': '\033[31m',
        'CRITICAL': '\033[35m',
    }
    RESET = '\033[0m'

    def __init__(self, fmt=None, datefmt=None, style='%', use_color=False):
        super().__init__(fmt, datefmt, style)
        self.use_color = use_color

    def format(self, record):
        # 未经过 ContextFilter 的记录（如第三方处理器）
        if not hasattr(record, 'context'):
            record.context = "-"

        original = record.levelname
        if self.use_color and original in self.COLORS:
            record.levelname = f"{self.COLORS[original]}{original}{self.RESET}"
        try:
            return super().format(record)
        finally:
            record.levelname = original


class LoggerManager:
    """
    日志管理器（单例）

    initialize() 重建根日志记录器的处理器；各模块通过
    logging.getLogger(name) 取得的记录器都会传播到这里。
    """

    _instance = None
    _initialized = False

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __init__(self):
        if not self._initialized:
            self.config = None
            self.context_filter = None
            self._initialized = True

    def load_config_from_dict(self, log_config: Optional[dict]) -> LogConfig:
        """
        根据配置文件的 logging 段生成 LogConfig

        每一项都可以被对应的环境变量覆盖（LOG_LEVEL、LOG_DIR、LOG_FILE、
        LOG_MAX_BYTES、LOG_BACKUP_COUNT、LOG_ROTATION_TYPE、LOG_FORMAT、
        LOG_ENABLE_CONSOLE、LOG_ENABLE_FILE、LOG_ENABLE_JOURNAL）。
        """
        section = log_config or {}
        defaults = LogConfig()

        def pick(env: str, key: str):
            return os.getenv(env, section.get(key, getattr(defaults, key)))

        return LogConfig(
            level=pick('LOG_LEVEL', 'level'),
            log_dir=pick('LOG_DIR', 'log_dir'),
            log_file=pick('LOG_FILE', 'log_file'),
            max_bytes=int(pick('LOG_MAX_BYTES', 'max_bytes')),
            backup_count=int(pick('LOG_BACKUP_COUNT', 'backup_count')),
            rotation_type=pick('LOG_ROTATION_TYPE', 'rotation_type'),
            format_string=pick('LOG_FORMAT', 'format_string'),
            enable_console=_env_bool('LOG_ENABLE_CONSOLE', section.get('enable_console', defaults.enable_console)),
            enable_file=_env_bool('LOG_ENABLE_FILE', section.get('enable_file', defaults.enable_file)),
            enable_journal=_env_bool('LOG_ENABLE_JOURNAL', section.get('enable_journal', defaults.enable_journal)),
            context_fields=section.get('context_fields', defaults.context_fields),
        )

    def initialize(self, config: Optional[LogConfig] = None, log_config: Optional[dict] = None):
        """
        初始化日志系统

        Args:
            config: 现成的 LogConfig，优先使用
            log_config: 配置文件中的 logging 段，config 为空时使用
        """
        self.config = config or self.load_config_from_dict(log_config)
        level = getattr(logging, self.config.level.upper(), logging.INFO)

        root_logger = logging.getLogger()
        root_logger.setLevel(level)
        root_logger.handlers.clear()
        self.context_filter = ContextFilter(self.config.context_fields)

        if self.config.enable_console:
            self._install(root_logger, logging.StreamHandler(sys.stdout), level,
                          use_color=sys.stdout.isatty())

        if self.config.enable_file:
            Path(self.config.log_dir).mkdir(parents=True, exist_ok=True)
            self._install(root_logger, self._file_handler(), level)

        if self.config.enable_journal and HAS_JOURNAL:
            journal_handler = JournalHandler(SYSLOG_IDENTIFIER='forward-proxy')
            journal_handler.setLevel(level)
            root_logger.addHandler(journal_handler)

    def _install(self, logger: logging.Logger, handler: logging.Handler, level: int, use_color: bool = False):
        handler.setLevel(level)
        handler.addFilter(self.context_filter)
        handler.setFormatter(LogFormatter(
            fmt=self.config.format_string,
            datefmt=DATE_FORMAT,
            use_color=use_color,
        ))
        logger.addHandler(handler)

    def _file_handler(self) -> logging.Handler:
        """按 rotation_type 创建文件处理器"""
        path = Path(self.config.log_dir) / self.config.log_file
        if self.config.rotation_type == 'size':
            return logging.handlers.RotatingFileHandler(
                filename=path,
                maxBytes=self.config.max_bytes,
                backupCount=self.config.backup_count,
                encoding='utf-8',
            )
        if self.config.rotation_type == 'date':
            return logging.handlers.TimedRotatingFileHandler(
                filename=path,
                when='midnight',
                backupCount=self.config.backup_count,
                encoding='utf-8',
            )
        return logging.FileHandler(filename=path, encoding='utf-8')


def add_context(**kwargs):
    """
    为当前任务设置上下文字段

    新字典替换旧字典，不修改父任务持有的副本。
    """
    context = dict(_log_context.get())
    context.update(kwargs)
    _log_context.set(context)


def clear_context():
    """清除当前任务的上下文信息"""
    _log_context.set({})