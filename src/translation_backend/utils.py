"""
Small helpers shared by the API and the worker.

- Creating directories for the SQLite store
- Configuring process-wide logging for the entry points
- Cleaning submitted text fields
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def ensure_directory(path: Path) -> Path:
    """
    Create a directory if it doesn't exist, including parent directories.

    Args:
        path: The directory path to create

    Returns:
        The same path object for chaining

    Raises:
        OSError: If directory creation fails due to permissions or other I/O errors
    """
    path.mkdir(parents=True, exist_ok=True)
    return path


def configure_logging(level: str = "INFO") -> None:
    """
    Set up root logging for the API and worker processes.

    Unknown level names fall back to INFO rather than failing startup.
    """
    numeric_level = logging.getLevelName(level.upper())
    if not isinstance(numeric_level, int):
        numeric_level = logging.INFO
    logging.basicConfig(level=numeric_level, format=LOG_FORMAT)


def clean_field(value: Optional[str]) -> str:
    """
    Normalize an optional text field from a request body.

    Example:
        >>> clean_field("  fr ")
        "fr"
        >>> clean_field(None)
        ""
    """
    if value is None:
        return ""
    return value.strip()


def is_encodable(value: str) -> bool:
    """
    Check that a string can be stored as UTF-8.

    JSON bodies may carry lone surrogates (``"\\ud800"``) which decode into
    Python strings but cannot be written to the store.
    """
    try:
        value.encode("utf-8")
    except UnicodeEncodeError:
        return False
    return True
