"""Iteration logging for auglag-jax solvers.

Solvers log a fixed-width table through the standard ``logging`` module: one
header line, then one row per iteration. Column widths are chosen from the
column types so that rows line up under the header.

Loggers are hierarchical under ``auglag_jax``:

- ``auglag_jax.al``: augmented Lagrangian outer loop.
- ``auglag_jax.tron``: bound-constrained trust-region solver.

Nothing is printed unless the application configures a handler, e.g.
``logging.basicConfig(level=logging.INFO)``. Nested solver calls are silenced
with :func:`suppressed_logging`.
"""

import contextlib
import logging
from collections.abc import Iterator, Sequence
from typing import Any

import numpy as np

LOGGER_NAME = "auglag_jax"

# (header format, row format) per column type
_INT_FORMATS = ("%6s", "%6d")
_FLOAT_FORMATS = ("%10s", "%10.2e")
_OTHER_FORMATS = ("%10s", "%10s")


def get_logger(name: str | None = None) -> logging.Logger:
    """Return the package logger, or the child logger ``auglag_jax.<name>``."""
    if name is None:
        return logging.getLogger(LOGGER_NAME)
    if name.startswith(LOGGER_NAME):
        return logging.getLogger(name)
    return logging.getLogger(f"{LOGGER_NAME}.{name}")


def _formats_for_type(kind: type) -> tuple[str, str]:
    if issubclass(kind, (bool, np.bool_)):
        return _OTHER_FORMATS
    if issubclass(kind, (int, np.integer)):
        return _INT_FORMATS
    if issubclass(kind, (float, np.floating)):
        return _FLOAT_FORMATS
    return _OTHER_FORMATS


def log_header(names: Sequence[str], types: Sequence[type]) -> str:
    """Format a table header.

    Args:
        names: Column names.
        types: Column types, used to pick the column widths.

    Returns:
        The header line.

    Raises:
        ValueError: If names and types differ in length.
    """
    if len(names) != len(types):
        raise ValueError(
            f"got {len(names)} column names but {len(types)} column types"
        )
    return "  ".join(
        _formats_for_type(kind)[0] % name for name, kind in zip(names, types)
    )


def log_row(values: Sequence[Any]) -> str:
    """Format one table row, picking each column's format from its value.

    JAX and NumPy scalars are converted to Python scalars first.
    """
    cells = []
    for value in values:
        if isinstance(value, (np.ndarray, np.generic)) or hasattr(value, "item"):
            value = np.asarray(value).item()
        cells.append(_formats_for_type(type(value))[1] % value)
    return "  ".join(cells)


@contextlib.contextmanager
def suppressed_logging(name: str = LOGGER_NAME) -> Iterator[logging.Logger]:
    """Silence a logger for the duration of a block.

    The previous state is restored on every exit path, including exceptions
    raised inside the block.

    Args:
        name: Name of the logger to silence.

    Yields:
        The silenced logger.
    """
    logger = get_logger(name)
    previous = logger.disabled
    logger.disabled = True
    try:
        yield logger
    finally:
        logger.disabled = previous
