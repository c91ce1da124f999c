"""
Logging utilities for markov-music.

Entrypoints call configure_logging() once at startup; library modules only
ever do ``logger = logging.getLogger(__name__)``.
"""
import logging
import os
import sys
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Optional, Union

_logging_configured = False
_session_id: Optional[str] = None
_HANDLER_TAG = "_mm_handler"
_CONSOLE_FMT = '%(asctime)s | %(levelname)-5s | %(name)s | %(message)s'
_CONSOLE_FMT_WITH_SESSION = '%(asctime)s | %(levelname)-5s | %(name)s | session=%(session_id)s | %(message)s'
_FILE_FMT = '%(asctime)s | %(levelname)-5s | %(name)s | %(funcName)s:%(lineno)d | session=%(session_id)s | %(message)s'


class SessionIdFilter(logging.Filter):
    """Inject session_id into every log record."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.session_id = _session_id or "-"
        return True


def set_session_id(session_id: Optional[str]) -> None:
    """Set the listening-session id stamped on log records."""
    global _session_id
    _session_id = session_id


def configure_logging(
    level: str = 'INFO',
    log_file: Optional[str] = None,
    file_level: str = 'DEBUG',
    force: bool = False,
    session_id: Optional[str] = None,
    console: bool = True,
    show_session_id: bool = False,
) -> None:
    """
    Configure logging for the whole process.

    Subsequent calls are ignored unless force=True.

    Args:
        level: Console log level (DEBUG, INFO, WARNING, ERROR)
        log_file: Optional path to a log file
        file_level: Level for the file handler
        force: Reconfigure even if already configured
        session_id: Identifier stamped on every record
        console: Whether to log to stderr
        show_session_id: Include the session id in console lines

    Environment variable overrides:
        LOG_LEVEL: Override the level parameter
        LOG_FILE: Override the log_file parameter
    """
    global _logging_configured

    if session_id:
        set_session_id(session_id)

    if _logging_configured and not force:
        return

    level = os.getenv('LOG_LEVEL', level).upper()
    if log_file is None:
        log_file = os.getenv('LOG_FILE')

    root = logging.getLogger()
    root.setLevel(logging.DEBUG)

    for handler in root.handlers[:]:
        if getattr(handler, _HANDLER_TAG, False):
            root.removeHandler(handler)

    root.filters = [f for f in root.filters if not isinstance(f, SessionIdFilter)]
    root.addFilter(SessionIdFilter())

    if console:
        # stdout belongs to the ctl/stats output, logs go to stderr
        console_handler = logging.StreamHandler(sys.stderr)
        console_handler.setLevel(getattr(logging, level, logging.INFO))
        console_handler.setFormatter(logging.Formatter(
            _CONSOLE_FMT_WITH_SESSION if show_session_id or level == 'DEBUG' else _CONSOLE_FMT,
            datefmt='%H:%M:%S',
        ))
        console_handler.addFilter(SessionIdFilter())
        setattr(console_handler, _HANDLER_TAG, True)
        root.addHandler(console_handler)

    if log_file:
        log_path = Path(log_file).expanduser()
        log_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = logging.FileHandler(log_path, encoding='utf-8')
        file_handler.setLevel(getattr(logging, file_level.upper(), logging.DEBUG))
        file_handler.setFormatter(logging.Formatter(_FILE_FMT, datefmt='%Y-%m-%d %H:%M:%S'))
        file_handler.addFilter(SessionIdFilter())
        setattr(file_handler, _HANDLER_TAG, True)
        root.addHandler(file_handler)

    _logging_configured = True

    logging.getLogger(__name__).debug(
        f"Logging configured: level={level}, file={log_file or 'none'}, session={_session_id or '-'}"
    )


@contextmanager
def stage_timer(stage_name: str, logger: Optional[logging.Logger] = None):
    """
    Time a block and log how long it took.

    Usage:
        with stage_timer("Transition store load", logger):
            store = TransitionStore.load(path)
    """
    logger = logger or logging.getLogger(__name__)
    logger.debug(f"{stage_name} starting...")
    start = time.perf_counter()
    try:
        yield
    finally:
        elapsed = time.perf_counter() - start
        if elapsed < 1:
            logger.info(f"{stage_name} completed in {elapsed * 1000:.0f}ms")
        else:
            logger.info(f"{stage_name} completed in {elapsed:.1f}s")


def format_count(n: int, singular: str, plural: Optional[str] = None) -> str:
    """Format a count like "1 song" or "1,204 songs"."""
    if plural is None:
        plural = singular + 's'
    return f"{n:,} {singular if n == 1 else plural}"


def add_logging_args(parser) -> None:
    """Add the standard --log-level/--debug/--quiet/--log-file flags."""
    group = parser.add_argument_group('logging')
    group.add_argument(
        '--log-level',
        choices=['DEBUG', 'INFO', 'WARNING', 'ERROR'],
        default=None,
        help='Set logging level (default: from config, else INFO)'
    )
    group.add_argument(
        '--debug',
        action='store_true',
        help='Enable debug logging (shortcut for --log-level DEBUG)'
    )
    group.add_argument(
        '--quiet',
        action='store_true',
        help='Suppress most output (shortcut for --log-level WARNING)'
    )
    group.add_argument(
        '--log-file',
        type=str,
        metavar='PATH',
        help='Write logs to file'
    )


def resolve_log_level(args, default: str = 'INFO') -> str:
    """
    Resolve log level from parsed arguments.

    Priority: --debug > --quiet > --log-level > default
    """
    if getattr(args, 'debug', False):
        return 'DEBUG'
    if getattr(args, 'quiet', False):
        return 'WARNING'
    return getattr(args, 'log_level', None) or default


class SessionSummary:
    """
    Collect counters during a listening session and log them on shutdown.

    Usage:
        summary = SessionSummary("Listening session")
        summary.increment("songs_played")
        summary.log()
    """

    def __init__(self, title: str, logger: Optional[logging.Logger] = None):
        self.title = title
        self.logger = logger or logging.getLogger(__name__)
        self.metrics: Dict[str, Any] = {}
        self.start_time = time.perf_counter()

    def add(self, key: str, value: Union[int, float, str]) -> None:
        self.metrics[key] = value

    def increment(self, key: str, amount: int = 1) -> None:
        self.metrics[key] = self.metrics.get(key, 0) + amount

    def log(self, level: int = logging.INFO) -> None:
        elapsed = time.perf_counter() - self.start_time
        self.logger.log(level, f"{self.title} summary:")
        for key, value in self.metrics.items():
            display_key = key.replace('_', ' ').title()
            if isinstance(value, float):
                self.logger.log(level, f"  {display_key}: {value:.2f}")
            else:
                self.logger.log(level, f"  {display_key}: {value}")
        minutes, seconds = divmod(int(elapsed), 60)
        self.logger.log(level, f"  Total Time: {minutes}m {seconds:02d}s")
