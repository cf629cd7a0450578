"""
VaultDAO Logging System
=======================

A thread-safe logging utility for the vault engine. This module integrates
with the standard Python `logging` library and the `rich` library so that
proposal transitions, ledger heights and transaction hashes stand out on the
console while every output stays free of terminal control sequences.

Usage:
    >>> from vaultdao.logger import get_logger
    >>> logger = get_logger(__name__)
    >>> logger.info("Proposal #4 approved")
"""

import logging
import logging.handlers
import re
import sys
import threading
import time
from pathlib import Path
from typing import Optional

from rich.console import Console
from rich.highlighter import RegexHighlighter
from rich.logging import RichHandler
from rich.theme import Theme

from .constants import (
    LOG_LEVEL,
    LOG_FORMAT,
    LOG_DATE_FORMAT,
    LOG_MAX_FILE_SIZE,
    LOG_BACKUP_COUNT,
    LOG_CONSOLE_HIGHLIGHTING,
    LOG_FILE_OUTPUT,
)


PROJECT_ROOT = Path(__file__).parent.parent
LOG_FILE_PATH = PROJECT_ROOT / "logs" / "vaultdao.log"


class LogManager:
    """
    Manages logging configuration via the Singleton pattern.

    The logging subsystem is initialized exactly once, with a 'Rich' console
    handler and, when enabled, a rotating file handler.
    """

    _instance: Optional["LogManager"] = None
    _lock: threading.Lock = threading.Lock()

    def __new__(cls) -> "LogManager":
        if cls._instance is None:
            with cls._lock:
                if cls._instance is None:
                    cls._instance = super().__new__(cls)
                    cls._instance._initialized = False
        return cls._instance

    def __init__(self) -> None:
        if self._initialized:
            return
        self._configured = False
        self._initialized = True

    @staticmethod
    def validate_log_format(log_format: str) -> str:
        """
        Validates a logging format string by formatting a dummy record.

        Returns the format unchanged, or the default `LOG_FORMAT` if it is
        malformed.
        """
        try:
            if not log_format:
                return str(LOG_FORMAT.default())
            log_format = str(log_format)

            specifier = r"\([a-zA-Z_][a-zA-Z0-9_]*\)[a-zA-Z]"
            for match in re.finditer(specifier, log_format):
                start = match.start()
                if start == 0 or log_format[start - 1] != "%":
                    raise ValueError("Malformed format specifier.")

            formatter = logging.Formatter(fmt=log_format)
            record = logging.LogRecord(
                name="test", level=logging.INFO, pathname="", lineno=0,
                msg="test", args=(), exc_info=None,
            )
            if re.search(specifier, formatter.format(record)):
                raise ValueError("Format specifiers not properly processed.")
            return log_format
        except (ValueError, KeyError, TypeError) as e:
            print(
                f"{time.strftime(str(LOG_DATE_FORMAT.default()))} - vaultdao.logger - "
                f"Validation Error: {e}. Using default.",
                file=sys.stderr,
            )
            return str(LOG_FORMAT.default())

    @staticmethod
    def validate_date_format(date_format: str) -> str:
        """Accepts only strftime directives and plain separators."""
        if not date_format:
            return str(LOG_DATE_FORMAT.default())
        date_format = str(date_format)
        pattern = re.compile(
            r"^(?:%%|%[-_0^#]*[A-Za-z]|[0-9 \t:\-\/\.,TZ+])+$"
        )
        if "%" not in date_format or not pattern.match(date_format):
            print(
                f"{time.strftime(str(LOG_DATE_FORMAT.default()))} - vaultdao.logger - "
                f"Invalid date format. Using default.",
                file=sys.stderr,
            )
            return str(LOG_DATE_FORMAT.default())
        return date_format

    def configure(
        self,
        log_level: Optional[str] = None,
        log_file: Optional[Path] = None,
        console_output: bool = True,
        file_output: Optional[bool] = None,
    ) -> None:
        """
        Configures the root logger with console and file handlers.

        Args:
            log_level: Logging level (DEBUG, INFO, etc.). Defaults to `.env`.
            log_file: Path to log file. Defaults to `logs/vaultdao.log`.
            console_output: Enable console logging.
            file_output: Enable rotating file logging. Defaults to `.env`.
        """
        with self._lock:
            if self._configured:
                return

            level_str = log_level or LOG_LEVEL
            numeric_level = getattr(logging, str(level_str).upper(), logging.INFO)

            root_logger = logging.getLogger()
            root_logger.setLevel(numeric_level)

            # Transport chatter from the RPC client
            for lib in ["httpx", "httpcore"]:
                logging.getLogger(lib).setLevel(logging.WARNING)

            root_logger.handlers.clear()

            log_format = self.validate_log_format(LOG_FORMAT)
            date_format = self.validate_date_format(LOG_DATE_FORMAT)

            formatter = TerminalSafeFormatter(fmt=log_format, datefmt=date_format + " UTC")
            formatter.converter = time.gmtime

            if console_output:
                if LOG_CONSOLE_HIGHLIGHTING:
                    theme = Theme(
                        {
                            "vault.level_critical": "bold red reverse",
                            "vault.level_debug":    "bold dim",
                            "vault.level_error":    "bold red",
                            "vault.level_info":     "bold green",
                            "vault.level_warning":  "bold yellow",
                            "vault.logger_name":    "magenta",
                            "vault.arrow":          "bold yellow",
                            "vault.proposal":       "bold cyan",
                            "vault.ledger":         "cyan",
                            "vault.tx_hash":        "dim cyan",
                            "vault.confirmed":      "bold green",
                            "vault.failed":         "bold red",
                            "vault.unknown":        "bold yellow",
                            "vault.timestamp":      "bold cyan",
                        }
                    )
                    console = Console(theme=theme, highlight=False)
                    handler = RichHandler(
                        console=console,
                        highlighter=VaultLogHighlighter(),
                        keywords=[],
                        rich_tracebacks=True,
                        omit_repeated_times=False,
                        show_path=False,
                        show_time=False,
                        show_level=False,
                        markup=False,
                    )
                else:
                    handler = logging.StreamHandler(sys.stdout)
                handler.setLevel(numeric_level)
                handler.setFormatter(formatter)
                root_logger.addHandler(handler)

            if file_output is None:
                file_output = bool(LOG_FILE_OUTPUT)
            if file_output:
                log_file_path = log_file or LOG_FILE_PATH
                log_file_path.parent.mkdir(parents=True, exist_ok=True)
                file_handler = logging.handlers.RotatingFileHandler(
                    filename=str(log_file_path),
                    maxBytes=LOG_MAX_FILE_SIZE,
                    backupCount=LOG_BACKUP_COUNT,
                    encoding="utf-8",
                )
                file_handler.setLevel(numeric_level)
                file_handler.setFormatter(formatter)
                root_logger.addHandler(file_handler)

            self._configured = True

    def get_logger(self, name: str) -> logging.Logger:
        if not self._configured:
            self.configure()
        return logging.getLogger(name)

    @property
    def is_configured(self) -> bool:
        return self._configured


class TerminalSafeFormatter(logging.Formatter):
    """
    Formatter that strips ANSI escape sequences and control characters.

    Memos, addresses and ledger error strings are attacker-controlled input
    and end up in log lines verbatim.
    """

    _ansi_escape_re = re.compile(
        r"\x1b\[[0-?]*[ -/]*[@-~]"
        r"|\x1b[@-Z\\-_]"
    )
    # Control chars (0x00-0x1F) excluding Tab and Newline
    _control_chars_re = re.compile(r"[\x00-\x08\x0B\x0C\x0E-\x1F\x7F]")
    _carriage_return_re = re.compile(r"\r")

    @classmethod
    def sanitize(cls, text: str) -> str:
        if not text:
            return text
        text = cls._ansi_escape_re.sub("", text)
        text = cls._carriage_return_re.sub("", text)
        text = cls._control_chars_re.sub("", text)
        return text

    def format(self, record: logging.LogRecord) -> str:
        return self.sanitize(super().format(record))


class VaultLogHighlighter(RegexHighlighter):
    """Regex highlighter for proposal lifecycle and pipeline logs."""

    base_style = "vault."
    highlights = [
        r"(?P<arrow>→|(\-\->))",
        r"(?P<level_critical>\bCRITICAL\b)",
        r"(?P<level_debug>\bDEBUG\b)",
        r"(?P<level_error>\bERROR\b)",
        r"(?P<level_info>\bINFO\b)",
        r"(?P<level_warning>\bWARNING\b)",
        r"\-\s+\w+\s+-\s+(?P<logger_name>[\w.]+)(?=\s-\s)",
        r"(?P<proposal>Proposal #\d+)",
        r"(?P<ledger>\bledger \d+\b)",
        r"(?P<tx_hash>\b[0-9a-f]{64}\b)",
        r"(?P<confirmed>\bCONFIRMED\b|\bEXECUTED\b)",
        r"(?P<failed>\bFAILED\b|\bREJECTED\b)",
        r"(?P<unknown>\bUNKNOWN\b|\bpending reconciliation\b)",
        r"(?P<timestamp>^(.*?)UTC)",
    ]


_manager = LogManager()


def get_logger(name: str) -> logging.Logger:
    """
    Public accessor of the logging system.

    Delegates to the singleton LogManager, which configures itself on first
    use.
    """
    return _manager.get_logger(name)
