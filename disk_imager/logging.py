from __future__ import annotations

import sys
import time
import uuid
from contextlib import contextmanager
from pathlib import Path
from typing import TYPE_CHECKING, Iterable, Optional

if TYPE_CHECKING:
    from loguru import Logger

from loguru import logger

OPERATIONS_LOG_NAME = "operations.log"


def setup_logging(
    *,
    debug: bool = False,
    trace: bool = False,
    log_dir: Optional[Path] = None,
) -> Optional[Path]:
    """
    Setup console and file logging sinks.

    Logging Tiers:
    - CRITICAL/ERROR: failed captures, restores, audits
    - SUCCESS/INFO: backup/restore/verify progress
    - DEBUG: every external command that is started
    - TRACE: captured output of successful commands

    Log Files (only when log_dir is given):
    - operations.log: INFO+ events (7 day retention)
    - debug.log: DEBUG+ events when --debug or --trace is enabled (3 day retention)
    - structured.jsonl: JSON records for analysis tools (7 day retention)

    Args:
        debug: Enable DEBUG level logging
        trace: Enable TRACE level logging (very verbose)
        log_dir: Directory for log files, None disables file logging

    Returns:
        Path to operations.log, or None when file logging is disabled
    """
    logger.remove()
    logger.configure(extra={"job_id": "-", "tags": [], "source": "imager"})

    if trace:
        console_level = "TRACE"
    elif debug:
        console_level = "DEBUG"
    else:
        console_level = "INFO"

    logger.add(
        sys.stderr,
        level=console_level,
        backtrace=False,
        diagnose=False,
        colorize=None,
        format=(
            "<green>{time:HH:mm:ss}</green> | "
            "<level>{level: <8}</level> | "
            "<cyan>{extra[source]: <10}</cyan> | "
            "{message}"
        ),
    )

    if log_dir is None:
        return None

    log_dir.mkdir(parents=True, exist_ok=True)
    operations_log = log_dir / OPERATIONS_LOG_NAME

    logger.add(
        operations_log,
        level="INFO",
        rotation="5 MB",
        retention="7 days",
        compression="zip",
        backtrace=False,
        diagnose=False,
        format=(
            "{time:YYYY-MM-DD HH:mm:ss.SSS} | "
            "{level: <8} | "
            "{extra[source]: <10} | "
            "{extra[job_id]: <18} | "
            "{message}"
        ),
    )

    if debug or trace:
        logger.add(
            log_dir / "debug.log",
            level="TRACE" if trace else "DEBUG",
            rotation="10 MB",
            retention="3 days",
            compression="zip",
            backtrace=True,
            diagnose=False,
            format=(
                "{time:YYYY-MM-DD HH:mm:ss.SSS} | "
                "{level: <8} | "
                "{extra[source]: <10} | "
                "{extra[job_id]: <18} | "
                "{extra[tags]} | "
                "{message}"
            ),
        )

    logger.add(
        log_dir / "structured.jsonl",
        level="INFO",
        rotation="10 MB",
        retention="7 days",
        compression="zip",
        serialize=True,
        format="{message}",
    )

    return operations_log


def get_logger(
    *,
    job_id: str | None = None,
    tags: Iterable[str] | None = None,
    source: str | None = None,
) -> Logger:
    """
    Get a logger with bound context.

    Args:
        job_id: Job identifier for tracking operations
        tags: Tags for filtering (e.g., ["backup", "capture"])
        source: Source component (e.g., "backup", "restore")

    Returns:
        Logger with bound context
    """
    extras: dict[str, object] = {}
    if job_id is not None:
        extras["job_id"] = job_id
    if tags is not None:
        extras["tags"] = list(tags)
    if source is not None:
        extras["source"] = source
    return logger.bind(**extras)


@contextmanager
def operation_context(operation: str, **details):
    """
    Context manager for tracking long-running operations with automatic timing.

    Logs operation start, completion, and failure with duration.

    Args:
        operation: Operation name (e.g., "backup", "restore", "verify")
        **details: Operation-specific details to log

    Yields:
        Logger bound with job_id and operation context

    Example:
        with operation_context("backup", source="/dev/nvme0n1") as log:
            log.info("Capturing partition 1")
    """
    job_id = f"{operation}-{uuid.uuid4().hex[:8]}"

    with logger.contextualize(job_id=job_id, operation=operation):
        start_time = time.time()
        log = logger.bind(source=operation, job_id=job_id, tags=[operation])

        detail_text = " ".join(f"{key}={value}" for key, value in details.items())
        log.info(f"{operation.capitalize()} started {detail_text}".rstrip())

        try:
            yield log
            duration = time.time() - start_time
            log.bind(duration_seconds=round(duration, 2)).success(
                f"{operation.capitalize()} completed in {duration:.2f}s"
            )
        except Exception as e:
            duration = time.time() - start_time
            log.bind(
                error_type=type(e).__name__, duration_seconds=round(duration, 2)
            ).error(f"{operation.capitalize()} failed after {duration:.2f}s: {e}")
            raise


class LoggerFactory:
    """
    Factory for creating domain-specific loggers with automatic context.

    Each factory method returns a logger pre-configured with the source and
    tags for its part of the imager.
    """

    @staticmethod
    def for_backup(job_id: str | None = None) -> Logger:
        """Logger for backup runs."""
        if job_id is None:
            job_id = f"backup-{uuid.uuid4().hex[:8]}"
        return logger.bind(job_id=job_id, source="backup", tags=["backup", "storage"])

    @staticmethod
    def for_restore(job_id: str | None = None) -> Logger:
        """Logger for restore runs."""
        if job_id is None:
            job_id = f"restore-{uuid.uuid4().hex[:8]}"
        return logger.bind(
            job_id=job_id, source="restore", tags=["restore", "storage"]
        )

    @staticmethod
    def for_verify() -> Logger:
        """Logger for backup set verification and audits."""
        return logger.bind(source="verify", tags=["verify"])

    @staticmethod
    def for_commands() -> Logger:
        """Logger for external command execution."""
        return logger.bind(source="command", tags=["command"])

    @staticmethod
    def for_system() -> Logger:
        """Logger for system operations (startup, config, devices)."""
        return logger.bind(source="system", tags=["system"])
