"""Structured logging configuration.

Review sessions generate candidates for several gaps concurrently, so log
lines carry the session and gap they belong to. ``log_context`` binds those
fields for the current task; asyncio tasks created inside it inherit them.
"""

import logging
import sys
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Iterator, Optional

from ..config.models import LoggingConfig

# Order in which context fields are rendered
CONTEXT_FIELDS = ("session", "gap", "candidate")

_context: ContextVar[dict[str, str]] = ContextVar("gapfill_log_context", default={})


@contextmanager
def log_context(**fields: Optional[str]) -> Iterator[None]:
    """Bind session/gap/candidate ids to log records emitted in this block.

    Args:
        **fields: Context values; None values are ignored
    """
    unknown = set(fields) - set(CONTEXT_FIELDS)
    if unknown:
        raise ValueError(f"Unknown log context fields: {', '.join(sorted(unknown))}")
    merged = {**_context.get(), **{k: str(v) for k, v in fields.items() if v is not None}}
    token = _context.set(merged)
    try:
        yield
    finally:
        _context.reset(token)


def current_context() -> dict[str, str]:
    return dict(_context.get())


class ContextFilter(logging.Filter):
    """Copy the bound log context onto each record as ``gap_context``."""

    def filter(self, record: logging.LogRecord) -> bool:
        context = _context.get()
        record.gap_context = " ".join(
            context[field] for field in CONTEXT_FIELDS if field in context
        )
        return True


class GapFillFormatter(logging.Formatter):
    """Custom formatter with colors and timestamps."""

    # Color codes
    COLORS = {
        "DEBUG": "\033[36m",  # Cyan
        "INFO": "\033[32m",  # Green
        "WARNING": "\033[33m",  # Yellow
        "ERROR": "\033[31m",  # Red
        "CRITICAL": "\033[35m",  # Magenta
        "RESET": "\033[0m",
    }

    def __init__(self, use_colors: bool = True):
        """Initialize formatter.

        Args:
            use_colors: Whether to use colors in output
        """
        super().__init__()
        self.use_colors = use_colors

    def format(self, record: logging.LogRecord) -> str:
        """Format as ``[HH:MM:SS] LEVEL name [session gap] message``.

        The bracketed context is omitted when nothing is bound.
        """
        levelname = record.levelname
        if self.use_colors and sys.stderr.isatty():
            level = f"{self.COLORS.get(levelname, '')}{levelname}{self.COLORS['RESET']}"
        else:
            level = levelname

        timestamp = datetime.fromtimestamp(record.created).strftime("%H:%M:%S")
        name = record.name.split(".")[-1]
        context = getattr(record, "gap_context", "")
        prefix = f"[{context}] " if context else ""

        message = record.getMessage()
        if record.exc_info:
            message = f"{message}\n{self.formatException(record.exc_info)}"

        return f"[{timestamp}] {level:8} {name:12} {prefix}{message}"


def _cleanup_old_logs(log_dir: Path, retention_days: int) -> None:
    """Remove log files older than retention_days."""
    if retention_days <= 0:
        return
    cutoff = datetime.now().timestamp() - (retention_days * 86400)
    for path in log_dir.glob("gapfill_*.log*"):
        try:
            if path.stat().st_mtime < cutoff:
                path.unlink()
        except FileNotFoundError:
            continue


def _resolve_level(level: str) -> int:
    value = logging.getLevelName(level.upper())
    if not isinstance(value, int):
        raise ValueError(f"Unknown log level: {level}")
    return value


def setup_logging(
    level: str = "INFO",
    log_file: Optional[Path] = None,
    log_dir: Optional[Path] = None,
    rotation_mb: int = 10,
    retention_days: int = 7,
    use_colors: bool = True,
    console: bool = True,
) -> None:
    """Setup logging configuration.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_file: Optional log file path
        log_dir: Optional log directory (used if log_file not provided)
        rotation_mb: Max log size before rotation (MB)
        retention_days: Days to retain log files (<=0 disables cleanup)
        use_colors: Whether to use colors in console output
        console: Whether to log to console

    Raises:
        ValueError: If the level name is unknown
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(_resolve_level(level))
    root_logger.handlers.clear()

    handlers: list[logging.Handler] = []
    if console:
        console_handler = logging.StreamHandler(sys.stderr)
        console_handler.setFormatter(GapFillFormatter(use_colors=use_colors))
        handlers.append(console_handler)

    if log_file or log_dir:
        if log_file is None:
            timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
            log_file = Path(log_dir) / f"gapfill_{timestamp}.log"
        log_file = Path(log_file)
        log_file.parent.mkdir(parents=True, exist_ok=True)
        _cleanup_old_logs(log_file.parent, retention_days)
        file_handler = RotatingFileHandler(
            log_file,
            maxBytes=max(1, rotation_mb) * 1024 * 1024,
            backupCount=max(1, retention_days),
        )
        file_handler.setFormatter(GapFillFormatter(use_colors=False))
        handlers.append(file_handler)

    for handler in handlers:
        handler.addFilter(ContextFilter())
        root_logger.addHandler(handler)

    # Provider SDK request logs drown out session events
    for name in ("httpx", "httpcore", "openai"):
        logging.getLogger(name).setLevel(logging.WARNING)


def setup_logging_from_config(config: LoggingConfig, verbose: bool = False) -> None:
    """Apply a ``logging`` config section.

    Without ``verbose`` the console stays quiet and only the log file (if
    ``log_dir`` is set) receives records, so CLI output is not interleaved
    with log lines.
    """
    setup_logging(
        level="DEBUG" if verbose else config.level,
        log_dir=config.log_dir,
        rotation_mb=config.rotation_mb,
        retention_days=config.retention_days,
        use_colors=verbose,
        console=verbose,
    )


def get_logger(name: str) -> logging.Logger:
    """Get logger instance.

    Args:
        name: Logger name

    Returns:
        Logger instance
    """
    return logging.getLogger(name)
