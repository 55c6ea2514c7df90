"""
Logging configuration for the Stop-High Scanner.
Uses loguru; diagnostics go to stderr (and optionally a file) because stdout
carries the NDJSON event stream.
"""

import sys
import time
from pathlib import Path
from typing import Optional

from loguru import logger

from config.settings import get_settings


CONSOLE_FORMAT = (
    "<green>{time:HH:mm:ss}</green> | "
    "<level>{level: <8}</level> | "
    "<cyan>{extra[name]}</cyan>:<cyan>{line}</cyan> | "
    "<level>{message}</level>"
)

FILE_FORMAT = "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <8} | {extra[name]}:{function}:{line} | {message}"


def setup_logging(
    level: Optional[str] = None,
    log_file: Optional[str] = None,
    rotation: str = "10 MB",
    retention: str = "7 days",
    serialize: Optional[bool] = None,
) -> None:
    """
    Configure logging for the application.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR). Defaults to settings value.
        log_file: Path to log file. Defaults to settings value.
        rotation: When to rotate log files. Default "10 MB".
        retention: How long to keep log files. Default "7 days".
        serialize: Write the file sink as JSON records. Defaults to settings value.
    """
    settings = get_settings()
    level = level or settings.log_level
    log_file = log_file or settings.log_file
    serialize = settings.log_json if serialize is None else serialize

    logger.remove()
    logger.configure(extra={"name": "root"})

    logger.add(
        sys.stderr,
        format=CONSOLE_FORMAT,
        level=level,
        colorize=True,
        backtrace=True,
        diagnose=False,
    )

    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)

        logger.add(
            log_path,
            format=FILE_FORMAT,
            level=level,
            rotation=rotation,
            retention=retention,
            compression="gz",
            serialize=serialize,
            enqueue=True,
        )

    logger.debug(f"Logging configured: level={level}, file={log_file}")


def get_logger(name: str):
    """
    Get a logger bound to a module or component name.

    Args:
        name: Logger name (typically __name__)

    Returns:
        Bound logger instance
    """
    return logger.bind(name=name)


class log_step:
    """
    Context manager that logs how long one scan step took.

    Usage:
        with log_step("instrument master", as_of="2024-03-08"):
            instruments = await client.get_listed_info()
    """

    def __init__(self, step: str, **context):
        self.step = step
        self.logger = logger.bind(name="scan", step=step, **context)
        self._start = 0.0

    def __enter__(self):
        self._start = time.perf_counter()
        self.logger.debug(f"{self.step}: started")
        return self.logger

    def __exit__(self, exc_type, exc_val, exc_tb):
        elapsed = time.perf_counter() - self._start

        if exc_type is not None and exc_type is not GeneratorExit:
            self.logger.warning(f"{self.step}: failed after {elapsed:.2f}s: {exc_val}")
        else:
            self.logger.info(f"{self.step}: done in {elapsed:.2f}s")

        return False


def log_api_call(
    service: str,
    endpoint: str,
    subject: str,
    success: bool,
    duration_ms: float,
    error: Optional[str] = None,
) -> None:
    """
    Log one HTTP call as a structured line.

    Args:
        service: API service name (e.g., "J-Quants")
        endpoint: API endpoint called
        subject: What the call was about (instrument code, date, "all")
        success: Whether call succeeded
        duration_ms: Call duration in milliseconds
        error: Error message if failed
    """
    log_data = {
        "service": service,
        "endpoint": endpoint,
        "subject": subject,
        "ok": success,
        "ms": round(duration_ms, 1),
    }

    if error:
        log_data["error"] = error
        logger.bind(name="api").warning(f"API call failed: {log_data}")
    else:
        logger.bind(name="api").debug(f"API call: {log_data}")
