# structlog over stdlib logging: console, one combined file and per-channel files
import logging
import logging.handlers
import sys
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

import structlog

from core.config.settings import Settings
from .channels import CHANNEL_CONFIGS, ChannelConfig, LogChannel, channel_for_component, parse_size

_logger_manager: Optional["EnhancedLoggerManager"] = None

DEFAULT_REDACT_KEYS = (
    "authorization", "api_key", "api-key", "x-api-key", "api_secret",
    "api-secret", "password", "secret", "signature", "x-signature", "token",
)

# Third-party loggers pinned to one channel file instead of the root handlers
_API_LOGGERS = ("uvicorn", "uvicorn.error", "uvicorn.access", "fastapi")
_DATABASE_LOGGERS = ("sqlalchemy", "sqlalchemy.engine", "sqlalchemy.pool")


class ChannelFilter(logging.Filter):
    """Pass records bound to `expected_channel`.

    Unbound records pass only when their logger name starts with one of
    `allowed_logger_prefixes`.
    """

    def __init__(self, expected_channel: str, allowed_logger_prefixes: Optional[List[str]] = None):
        super().__init__()
        self.expected_channel = expected_channel
        self.allowed_logger_prefixes = allowed_logger_prefixes or []

    def filter(self, record: logging.LogRecord) -> bool:
        event = record.msg if isinstance(record.msg, dict) else {}
        channel = event.get("channel", getattr(record, "channel", None))
        if channel is not None:
            return str(channel) == self.expected_channel
        return any(record.name.startswith(prefix) for prefix in self.allowed_logger_prefixes)


def make_redaction_processor(redact_keys: Optional[Iterable[str]]):
    """Processor masking sensitive keys at any depth of the event dict."""
    keys = {k.lower() for k in (redact_keys or DEFAULT_REDACT_KEYS)}

    def _redact(obj):
        if isinstance(obj, dict):
            return {
                k: "[REDACTED]" if isinstance(k, str) and k.lower() in keys else _redact(v)
                for k, v in obj.items()
            }
        if isinstance(obj, list):
            return [_redact(v) for v in obj]
        return obj

    def redact_sensitive(logger, name, event_dict):
        return _redact(event_dict)

    return redact_sensitive


class EnhancedLoggerManager:
    """Owns every handler it attaches so tests and the CLI can reconfigure."""

    def __init__(self, settings: Settings):
        self.settings = settings
        self.config = settings.logging
        self.level = getattr(logging, self.config.level.upper())
        self.channel_handlers: Dict[LogChannel, logging.Handler] = {}
        self._root_handlers: List[logging.Handler] = []
        self._pinned: List[tuple] = []
        self.configured_loggers: Dict[str, structlog.BoundLogger] = {}

        root = logging.getLogger()
        root.setLevel(self.level)
        if self.config.console_enabled:
            self._attach_root(self._console_handler())
        if self.config.file_enabled:
            Path(settings.logs_dir).mkdir(parents=True, exist_ok=True)
            combined = self._rotating(Path(settings.logs_dir) / "custody_ledger.log",
                                      self.config.file_max_size, self.config.file_backup_count, self.level)
            self._attach_root(combined)
            if self.config.multi_channel_enabled:
                self._setup_channels()
        self._configure_structlog()

    # Handlers

    def _formatter(self, renderer) -> structlog.stdlib.ProcessorFormatter:
        return structlog.stdlib.ProcessorFormatter(
            processor=renderer,
            foreign_pre_chain=[
                structlog.stdlib.add_log_level,
                structlog.stdlib.add_logger_name,
                structlog.processors.TimeStamper(fmt="iso"),
            ],
        )

    def _file_renderer(self):
        if self.config.json_format:
            return structlog.processors.JSONRenderer(default=str)
        return structlog.processors.KeyValueRenderer(key_order=["event", "level", "timestamp"])

    def _console_handler(self) -> logging.Handler:
        renderer = (structlog.processors.JSONRenderer(default=str) if self.config.console_json_format
                    else structlog.dev.ConsoleRenderer())
        handler = logging.StreamHandler(sys.stdout)
        handler.setLevel(self.level)
        handler.setFormatter(self._formatter(renderer))
        return handler

    def _rotating(self, path: Path, max_size: str, backups: int, level: int) -> logging.Handler:
        handler = logging.handlers.RotatingFileHandler(
            filename=path, maxBytes=parse_size(max_size), backupCount=backups, encoding="utf-8",
        )
        handler.setLevel(level)
        handler.setFormatter(self._formatter(self._file_renderer()))
        return handler

    def _attach_root(self, handler: logging.Handler) -> None:
        logging.getLogger().addHandler(handler)
        self._root_handlers.append(handler)

    def _channel_handler(self, channel: LogChannel, config: ChannelConfig) -> logging.Handler:
        handler = self._rotating(config.path_in(self.settings.logs_dir), config.max_bytes,
                                 config.backup_count, getattr(logging, config.level))
        if channel != LogChannel.ERROR:
            prefixes = ["uvicorn", "fastapi", "starlette"] if channel == LogChannel.API else []
            handler.addFilter(ChannelFilter(channel.value, prefixes))
        return handler

    def _setup_channels(self) -> None:
        for channel, config in CHANNEL_CONFIGS.items():
            handler = self._channel_handler(channel, config)
            self.channel_handlers[channel] = handler
            self._attach_root(handler)
        self._pin(_API_LOGGERS, self.channel_handlers[LogChannel.API])
        self._pin(_DATABASE_LOGGERS, self.channel_handlers[LogChannel.DATABASE], default_level=logging.WARNING)

    def _pin(self, names: Iterable[str], handler: logging.Handler, default_level: Optional[int] = None) -> None:
        for name in names:
            lg = logging.getLogger(name)
            lg.addHandler(handler)
            lg.propagate = False
            if default_level is not None and lg.level == logging.NOTSET:
                lg.setLevel(default_level)
            self._pinned.append((lg, handler))

    def _configure_structlog(self) -> None:
        settings = self.settings

        def add_standard_context(logger, name, event_dict):
            event_dict.setdefault("env", getattr(settings.environment, "value", str(settings.environment)))
            event_dict.setdefault("service", settings.app_name)
            event_dict.setdefault("version", settings.version)
            return event_dict

        structlog.configure(
            processors=[
                structlog.contextvars.merge_contextvars,
                add_standard_context,
                structlog.stdlib.add_log_level,
                structlog.stdlib.add_logger_name,
                structlog.stdlib.PositionalArgumentsFormatter(),
                structlog.processors.TimeStamper(fmt="iso"),
                structlog.processors.StackInfoRenderer(),
                structlog.processors.format_exc_info,
                structlog.processors.UnicodeDecoder(),
                make_redaction_processor(self.config.redact_keys),
                structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
            ],
            logger_factory=structlog.stdlib.LoggerFactory(),
            wrapper_class=structlog.stdlib.BoundLogger,
            cache_logger_on_first_use=False,
        )

    # Loggers

    def get_logger(self, name: str, component: Optional[str] = None) -> structlog.BoundLogger:
        key = f"{name}:{component or ''}"
        logger = self.configured_loggers.get(key)
        if logger is None:
            logger = structlog.get_logger(name)
            if component:
                logger = logger.bind(component=component)
                if self.config.multi_channel_enabled:
                    logger = logger.bind(channel=channel_for_component(component).value)
            self.configured_loggers[key] = logger
        return logger

    def get_statistics(self) -> Dict[str, Any]:
        return {
            "loggers": len(self.configured_loggers),
            "logs_directory": self.settings.logs_dir,
            "console_enabled": self.config.console_enabled,
            "file_enabled": self.config.file_enabled,
            "json_format": self.config.json_format,
            "channels": {
                channel.value: CHANNEL_CONFIGS[channel].filename
                for channel in self.channel_handlers
            },
        }

    def shutdown(self) -> None:
        root = logging.getLogger()
        for lg, handler in self._pinned:
            lg.removeHandler(handler)
        for handler in self._root_handlers:
            root.removeHandler(handler)
            handler.close()
        self._pinned.clear()
        self._root_handlers.clear()
        self.channel_handlers.clear()


def configure_enhanced_logging(settings: Settings) -> None:
    """Configure logging once per process; later calls are no-ops."""
    global _logger_manager
    if _logger_manager is None:
        _logger_manager = EnhancedLoggerManager(settings)


def reset_enhanced_logging() -> None:
    global _logger_manager
    if _logger_manager is not None:
        _logger_manager.shutdown()
    _logger_manager = None
    structlog.reset_defaults()


def get_enhanced_logger(name: str, component: Optional[str] = None) -> structlog.BoundLogger:
    if _logger_manager is None:
        # Unconfigured: structlog defaults print to stdout
        logger = structlog.get_logger(name)
        return logger.bind(component=component) if component else logger
    return _logger_manager.get_logger(name, component)


def get_channel_logger(name: str, channel: LogChannel) -> structlog.BoundLogger:
    return structlog.get_logger(name).bind(channel=channel.value)


def get_logging_statistics() -> Dict[str, Any]:
    if _logger_manager is None:
        return {"error": "Logger manager not initialized"}
    return _logger_manager.get_statistics()
