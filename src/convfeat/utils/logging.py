"""
Structured Logging
==================

Console logging through Rich for interactive runs, plus an optional
plain-text log file for batch extraction over many images.

Design Principles:
    - All convfeat loggers hang below the ``convfeat`` logger; handlers are
      installed there once, never on the root logger
    - Messages are ``event | key=value key=value`` so log files stay greppable
    - Severity tags map to Rich colours on the console
    - Library modules only call ``get_logger(__name__)``; applications
      (the CLI) decide level and log directory via ``configure_logging``

Severity Levels:
    info     (cyan)     — routine progress
    ok       (green)    — successful completion
    warn     (yellow)   — recoverable issues (layer fallback, CUDA missing)
    error    (red)      — failures
    metric   (magenta)  — grid sizes, channel counts

Usage::

    from convfeat.utils.logging import get_logger, log

    logger = get_logger(__name__)
    logger.info("network_loaded | structure=%s layers=%d", name, n_layers)
    log("extract_done | images=12 failed=0", severity="ok")
"""

from __future__ import annotations

import logging
from datetime import datetime
from pathlib import Path
from typing import Optional

from rich.console import Console
from rich.logging import RichHandler

ROOT_LOGGER = "convfeat"

SEVERITY_COLORS = {
    "info":   "cyan",
    "ok":     "green",
    "warn":   "yellow",
    "error":  "red",
    "metric": "magenta",
}

_FILE_FORMAT = "[%(asctime)s] %(levelname)-7s %(name)s | %(message)s"

_console = Console(stderr=True)
_handlers: list[logging.Handler] = []
_configured = False


def configure_logging(
    level: str = "INFO",
    log_dir: Optional[str | Path] = None,
    log_file: Optional[str] = None,
) -> Optional[Path]:
    """
    Install console (and optionally file) handlers on the ``convfeat`` logger.

    Only the first call has an effect; use ``reset_logging()`` to start over.

    Args:
        level:    DEBUG, INFO, WARNING or ERROR.
        log_dir:  Directory for the log file.  Created if needed.
        log_file: File name.  Defaults to ``convfeat_<timestamp>.log``.

    Returns:
        Path of the log file, or None when logging to the console only.
    """
    global _configured

    if _configured:
        return None

    package_logger = logging.getLogger(ROOT_LOGGER)
    package_logger.setLevel(getattr(logging, level.upper(), logging.INFO))

    console_handler = RichHandler(console=_console, rich_tracebacks=True, show_path=False, markup=True)
    console_handler.setFormatter(logging.Formatter("%(message)s"))
    package_logger.addHandler(console_handler)
    _handlers.append(console_handler)

    log_path = None
    if log_dir is not None:
        log_dir = Path(log_dir)
        log_dir.mkdir(parents=True, exist_ok=True)
        log_path = log_dir / (log_file or f"convfeat_{datetime.now():%Y%m%d_%H%M%S}.log")
        file_handler = logging.FileHandler(log_path, encoding="utf-8")
        file_handler.setFormatter(logging.Formatter(_FILE_FORMAT))
        package_logger.addHandler(file_handler)
        _handlers.append(file_handler)

    _configured = True
    return log_path


def reset_logging() -> None:
    """Remove the handlers installed by ``configure_logging``."""
    global _configured

    package_logger = logging.getLogger(ROOT_LOGGER)
    while _handlers:
        handler = _handlers.pop()
        package_logger.removeHandler(handler)
        handler.close()
    _configured = False


def get_logger(name: str, level: Optional[str] = None) -> logging.Logger:
    """
    Logger for a convfeat module, with console output set up on first use.

    Args:
        name:  Logger name (typically ``__name__``).
        level: Per-logger level override.
    """
    if not _configured:
        configure_logging()

    logger = logging.getLogger(name)
    if level is not None:
        logger.setLevel(getattr(logging, level.upper(), logging.INFO))
    return logger


def log(msg: str, severity: str = "info") -> None:
    """
    Log a one-off message with a severity colour.

    Args:
        msg:      Pipe-delimited message (``"extract_done | images=3"``).
        severity: One of info, ok, warn, error, metric.
    """
    logger = get_logger(ROOT_LOGGER)
    if severity == "error":
        logger.error(msg)
    elif severity == "warn":
        logger.warning(msg)
    else:
        colour = SEVERITY_COLORS.get(severity, "white")
        logger.info(f"[{colour}]{msg}[/{colour}]")


def log_grid(logger: logging.Logger, source: str, grid_shape: tuple[int, ...], cell_size: tuple[int, int]) -> None:
    """
    Log the size of an extracted feature grid.

    Args:
        logger:     Logger instance.
        source:     Image name or other label.
        grid_shape: ``(rows, cols, features)``.
        cell_size:  ``(width, height)`` of one cell in pixels.
    """
    rows, cols, features = grid_shape
    logger.info(
        "grid | source=%s cells=%dx%d features=%d cell=%dx%d",
        source,
        cols,
        rows,
        features,
        cell_size[0],
        cell_size[1],
    )
