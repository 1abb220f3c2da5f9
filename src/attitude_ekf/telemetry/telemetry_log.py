"""
===============================================================================
ATTITUDE EKF - Telemetry Log
===============================================================================
Row-per-step signal recorder for the simulation.

Signals are registered once at setup as (name, getter) pairs. Every call to
log_signals() evaluates all getters and appends one row; vectors and
matrices are flattened into one column per element:

    vector  "b_g"      -> b_g_0, b_g_1, b_g_2
    matrix  "R_bn_hat" -> R_bn_hat_0_0, R_bn_hat_0_1, ..., R_bn_hat_2_2

The accumulated rows become a pandas DataFrame; end_logging() writes it to
CSV.

Usage:
    with TelemetryLog("output/telemetry.csv") as tlm:
        tlm.add_signal("t", lambda: ctx.t)
        tlm.add_signal("R_bn_hat", lambda: attitude.rotation)
        tlm.create_log_header()
        for _ in range(n_steps):
            ...
            tlm.log_signals()
===============================================================================
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

import numpy as np
import pandas as pd

from attitude_ekf.core.exceptions import ConfigurationError, DimensionError

logger = logging.getLogger(__name__)


def _column_names(name: str, shape: Tuple[int, ...]) -> List[str]:
    if len(shape) == 0:
        return [name]
    if len(shape) == 1:
        return [f"{name}_{i}" for i in range(shape[0])]
    if len(shape) == 2:
        return [f"{name}_{i}_{j}" for i in range(shape[0]) for j in range(shape[1])]
    raise DimensionError(f"Signal '{name}' has unsupported rank {len(shape)}")


class TelemetryLog:
    """
    Recorder for named scalar, vector and matrix signals.

    Parameters
    ----------
    filepath : str or Path, optional
        CSV destination written by end_logging(). None keeps the log in
        memory only.
    """

    def __init__(self, filepath: Optional[Union[str, Path]] = None) -> None:
        self.filepath = Path(filepath) if filepath is not None else None
        self._signals: Dict[str, Callable[[], Any]] = {}
        self._shapes: Dict[str, Tuple[int, ...]] = {}
        self._columns: List[str] = []
        self._rows: List[List[float]] = []
        self._header_created = False

    @property
    def signal_names(self) -> List[str]:
        return list(self._signals)

    @property
    def columns(self) -> List[str]:
        return list(self._columns)

    def __len__(self) -> int:
        return len(self._rows)

    def add_signal(self, name: str, getter: Callable[[], Any]) -> None:
        """
        Register a signal. Must be called before create_log_header().

        Args:
            name: Column prefix, unique within the log.
            getter: Zero-argument callable returning the current value.
        """
        if self._header_created:
            raise ConfigurationError(
                f"Cannot add signal '{name}' after the log header was created"
            )
        if name in self._signals:
            raise ConfigurationError(f"Signal '{name}' is already registered")
        if not callable(getter):
            raise ConfigurationError(f"Getter for signal '{name}' is not callable")
        self._signals[name] = getter

    def create_log_header(self) -> List[str]:
        """Freeze the signal set and derive the column names from current values."""
        columns: List[str] = []
        for name, getter in self._signals.items():
            shape = np.shape(getter())
            self._shapes[name] = shape
            columns.extend(_column_names(name, shape))
        self._columns = columns
        self._header_created = True
        logger.debug("Telemetry header: %d signals, %d columns",
                     len(self._signals), len(columns))
        return list(columns)

    def log_signals(self) -> None:
        """Append one row with the current value of every signal."""
        if not self._header_created:
            self.create_log_header()
        row: List[float] = []
        for name, getter in self._signals.items():
            value = np.asarray(getter(), dtype=np.float64)
            if value.shape != self._shapes[name]:
                raise DimensionError(
                    f"Signal '{name}' changed shape from {self._shapes[name]} to {value.shape}"
                )
            row.extend(value.reshape(-1).tolist())
        self._rows.append(row)

    def to_dataframe(self) -> pd.DataFrame:
        """Return all logged rows as a DataFrame."""
        return pd.DataFrame(self._rows, columns=self._columns)

    def end_logging(self) -> pd.DataFrame:
        """Write the log to CSV (if a filepath was given) and return it."""
        df = self.to_dataframe()
        if self.filepath is not None:
            self.filepath.parent.mkdir(parents=True, exist_ok=True)
            df.to_csv(self.filepath, index=False)
            logger.info("Telemetry saved to %s  (%d records)", self.filepath, len(df))
        return df

    def __enter__(self) -> "TelemetryLog":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        if exc_type is None:
            self.end_logging()

    def __repr__(self) -> str:
        return f"TelemetryLog(signals={len(self._signals)}, rows={len(self._rows)})"
