import contextvars
import logging
import re
import sys
from contextlib import contextmanager
from datetime import datetime
from typing import Optional

import colorama
from colorama import Fore, Style

user_id_var: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar(
    "user_id_var", default=None
)
integration_var: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar(
    "integration_var", default=None
)
step_var: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar(
    "step_var", default="APP"
)

LOG_LEVELS = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARNING": logging.WARNING,
    "ERROR": logging.ERROR,
}

URL_REGEX = re.compile(r'https?://[^/\s]+(/[^"\'\s<?]*)?(\?[^"\'\s<]*)?')


def redact_url(message: str) -> str:
    """Finds URLs in a log message and replaces them with just the path."""

    def replacer(match):
        path = match.group(1)
        return path if path else "/"

    return URL_REGEX.sub(replacer, message)


class CustomFormatter(logging.Formatter):
    """
    A custom formatter that injects context variables and colors.
    """

    COLORS = {
        "timestamp": Fore.LIGHTBLACK_EX,
        "step": Fore.BLUE,
        "user": Fore.CYAN,
        "integration": Fore.MAGENTA,
        "reset": Style.RESET_ALL,
    }

    LOG_LEVEL_COLORS = {
        logging.DEBUG: Fore.CYAN,
        logging.INFO: Fore.GREEN,
        logging.WARNING: Fore.YELLOW,
        logging.ERROR: Fore.RED,
        logging.CRITICAL: Fore.RED + Style.BRIGHT,
    }

    def format(self, record):
        level_color = self.LOG_LEVEL_COLORS.get(record.levelno, self.COLORS["reset"])

        t = datetime.fromtimestamp(record.created)
        asctime = t.strftime("%Y-%m-%dT%H:%M:%S")
        msecs = f"{int(record.msecs):03d}"
        timestamp_str = f"[{asctime}.{msecs}]"

        record.step = step_var.get()

        log_parts = [
            f"{self.COLORS['timestamp']}{timestamp_str}{self.COLORS['reset']}",
            f"{level_color}[{record.levelname}]{self.COLORS['reset']}",
            f"{self.COLORS['step']}[{record.step}]{self.COLORS['reset']}",
        ]

        if user_id := user_id_var.get():
            log_parts.append(
                f"{self.COLORS['user']} [user={user_id}]{self.COLORS['reset']}"
            )
        if integration_id := integration_var.get():
            log_parts.append(
                f"{self.COLORS['integration']} [integration={integration_id}]{self.COLORS['reset']}"
            )

        record.message = record.getMessage()

        log_parts.append(f" {record.message}")

        formatted_message = "".join(log_parts)

        if record.exc_info:
            formatted_message += (
                f"\n{self.COLORS['reset']}{self.formatException(record.exc_info)}"
            )

        return redact_url(formatted_message)


def setup_logging(level: str = "INFO"):
    """
    Configures the root logger for the application.
    """
    colorama.init()

    log_level = LOG_LEVELS.get(level.upper(), logging.INFO)

    stdout_handler = logging.StreamHandler(sys.stdout)
    stdout_handler.setLevel(log_level)
    stdout_handler.addFilter(lambda record: record.levelno < logging.ERROR)
    stdout_handler.setFormatter(CustomFormatter())

    stderr_handler = logging.StreamHandler(sys.stderr)
    stderr_handler.setLevel(logging.ERROR)
    stderr_handler.setFormatter(CustomFormatter())

    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG)

    if root_logger.hasHandlers():
        root_logger.handlers.clear()

    root_logger.addHandler(stdout_handler)
    root_logger.addHandler(stderr_handler)

    # SQLAlchemy and httpx log at INFO on every statement/request.
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)


@contextmanager
def log_step(name: str):
    """Context manager to set the 'step' for all logs within it."""
    token = step_var.set(name)
    try:
        yield
    finally:
        step_var.reset(token)


@contextmanager
def log_context(user_id: str | None = None, integration_id: str | None = None):
    """Tags logs within the block with the acting user and integration."""
    user_token = user_id_var.set(user_id) if user_id else None
    integration_token = (
        integration_var.set(integration_id) if integration_id else None
    )
    try:
        yield
    finally:
        if integration_token is not None:
            integration_var.reset(integration_token)
        if user_token is not None:
            user_id_var.reset(user_token)
