import math

import numpy as np
import pandas as pd


GRADES = ('A', 'B', 'C', 'D', 'F')

# (grade, elapsed ms per execution upper bound, buffer gets per execution upper bound)
GRADE_THRESHOLDS = (
    ('A', 100, 1_000),
    ('B', 500, 5_000),
    ('C', 1_000, 10_000),
    ('D', 5_000, 50_000),
)


def _clean(value) -> float:
    try:
        value = float(value)
    except (TypeError, ValueError):
        return 0.0
    if math.isnan(value) or value < 0:
        return 0.0
    return value


def grade(elapsed_ms_per_exec, buffer_gets_per_exec) -> str:
    """
    A: elapsed < 100ms and buffer gets < 1,000
    B: elapsed < 500ms and buffer gets < 5,000
    C: elapsed < 1,000ms and buffer gets < 10,000
    D: elapsed < 5,000ms and buffer gets < 50,000
    F: everything else
    """
    elapsed = _clean(elapsed_ms_per_exec)
    gets = _clean(buffer_gets_per_exec)
    for letter, max_elapsed, max_gets in GRADE_THRESHOLDS:
        if elapsed < max_elapsed and gets < max_gets:
            return letter
    return 'F'


def per_execution(total, executions) -> float:
    """total / max(executions, 1); zero executions report zero."""
    executions = _clean(executions)
    if executions == 0:
        return 0.0
    return _clean(total) / max(executions, 1)


def per_execution_series(total: pd.Series, executions: pd.Series) -> pd.Series:
    executions = pd.to_numeric(executions, errors='coerce').fillna(0)
    total = pd.to_numeric(total, errors='coerce').fillna(0)
    result = total / executions.clip(lower=1)
    return result.where(executions > 0, 0.0)


def grade_frame(df: pd.DataFrame, elapsed_col: str = 'avg_elapsed_time', gets_col: str = 'avg_buffer_gets') -> pd.Series:
    if df.empty:
        return pd.Series([], dtype=object)
    return pd.Series(
        np.vectorize(grade, otypes=[object])(df[elapsed_col].to_numpy(), df[gets_col].to_numpy()),
        index=df.index,
    )
