import datetime
import math
from typing import List, Optional

import numpy as np
import pandas as pd

from perfhistory.core.config import settings
from .grading import grade, grade_frame, per_execution_series


HISTORY_COLUMNS = [
    'sql_id', 'sql_text', 'executions', 'avg_elapsed_time', 'avg_cpu_time',
    'avg_buffer_gets', 'avg_disk_reads', 'rows_processed', 'performance_grade',
    'parsing_schema_name', 'first_seen', 'last_seen', 'source',
]


def to_text(value) -> Optional[str]:
    if value is None or (isinstance(value, float) and math.isnan(value)):
        return None
    if isinstance(value, (bytes, bytearray)):
        return bytes(value).decode('utf-8', errors='replace')
    if hasattr(value, 'read'):
        # LOB locators that were not converted by the driver
        return to_text(value.read())
    return str(value)


def truncate_bytes(value: Optional[str], max_bytes: int) -> Optional[str]:
    """Cut to a UTF-8 byte budget without splitting a multi-byte character."""
    if value is None:
        return None
    encoded = value.encode('utf-8')
    if len(encoded) <= max_bytes:
        return value
    return encoded[:max_bytes].decode('utf-8', errors='ignore')


def _numeric(df: pd.DataFrame, column: str) -> pd.Series:
    if column not in df.columns:
        return pd.Series(0.0, index=df.index)
    return pd.to_numeric(df[column], errors='coerce').fillna(0)


def _column(df: pd.DataFrame, column: str) -> pd.Series:
    if column not in df.columns:
        return pd.Series([None] * len(df), index=df.index, dtype=object)
    return df[column]


def normalize_cache_frame(df: pd.DataFrame, source: str) -> pd.DataFrame:
    """Tier A/C rows carry cumulative counters; derive per-execution averages (times in ms)."""
    if df.empty:
        return pd.DataFrame(columns=HISTORY_COLUMNS)
    executions = _numeric(df, 'executions')
    out = pd.DataFrame(index=df.index)
    out['sql_id'] = df['sql_id']
    out['sql_text'] = _column(df, 'sql_text').map(lambda v: to_text(v) or '')
    out['executions'] = executions.astype('int64')
    out['avg_elapsed_time'] = (per_execution_series(_numeric(df, 'elapsed_time'), executions) / 1000).round(2)
    out['avg_cpu_time'] = (per_execution_series(_numeric(df, 'cpu_time'), executions) / 1000).round(2)
    out['avg_buffer_gets'] = per_execution_series(_numeric(df, 'buffer_gets'), executions).round(0)
    out['avg_disk_reads'] = per_execution_series(_numeric(df, 'disk_reads'), executions).round(0)
    out['rows_processed'] = _numeric(df, 'rows_processed').astype('int64')
    out['parsing_schema_name'] = _column(df, 'parsing_schema_name')
    out['first_seen'] = _column(df, 'first_seen') if 'first_seen' in df.columns else _column(df, 'first_load_time')
    out['last_seen'] = _column(df, 'last_seen') if 'last_seen' in df.columns else _column(df, 'last_active_time')
    out['source'] = source
    out['performance_grade'] = grade_frame(out)
    return out[HISTORY_COLUMNS]


def normalize_snapshot_frame(df: pd.DataFrame, source: str = 'awr') -> pd.DataFrame:
    """Tier B rows arrive with averages already folded across snapshots."""
    if df.empty:
        return pd.DataFrame(columns=HISTORY_COLUMNS)
    out = pd.DataFrame(index=df.index)
    out['sql_id'] = df['sql_id']
    out['sql_text'] = _column(df, 'sql_text').map(lambda v: to_text(v) or '')
    out['executions'] = _numeric(df, 'executions').astype('int64')
    for column in ('avg_elapsed_time', 'avg_cpu_time', 'avg_buffer_gets', 'avg_disk_reads'):
        out[column] = _numeric(df, column)
    out['rows_processed'] = _numeric(df, 'rows_processed').astype('int64')
    out['parsing_schema_name'] = _column(df, 'parsing_schema_name')
    out['first_seen'] = _column(df, 'first_seen')
    out['last_seen'] = _column(df, 'last_seen')
    out['source'] = source
    out['performance_grade'] = grade_frame(out)
    return out[HISTORY_COLUMNS]


def order_by_metric(df: pd.DataFrame, column: str) -> pd.DataFrame:
    """Descending by one metric; equal values keep the tier's own row order."""
    if df.empty:
        return df
    return df.sort_values(column, ascending=False, kind='mergesort')


def _plain(value):
    if value is None:
        return None
    if isinstance(value, pd.Timestamp):
        return None if pd.isna(value) else value.to_pydatetime()
    if isinstance(value, np.integer):
        return int(value)
    if isinstance(value, np.floating):
        value = float(value)
    if isinstance(value, float) and (math.isnan(value) or math.isinf(value)):
        return None
    return value


def frame_to_rows(df: pd.DataFrame) -> List[dict]:
    return [{k: _plain(v) for k, v in row.items()} for row in df.to_dict(orient='records')]


def build_performance_records(df: pd.DataFrame, connection_id: str, collected_at: datetime.datetime,
                              source: str = 'v$sql', max_text_bytes: Optional[int] = None) -> List[dict]:
    """Turn raw cursor-cache rows into column dicts for PerformanceRecord."""
    max_text_bytes = max_text_bytes or settings.SQL_TEXT_MAX_BYTES
    if df.empty:
        return []

    executions = _numeric(df, 'executions')
    elapsed_ms = (per_execution_series(_numeric(df, 'elapsed_time'), executions) / 1000).round(2)
    cpu_ms = (per_execution_series(_numeric(df, 'cpu_time'), executions) / 1000).round(2)
    gets = per_execution_series(_numeric(df, 'buffer_gets'), executions).round(0)
    disk = per_execution_series(_numeric(df, 'disk_reads'), executions).round(0)

    counters = {c: _numeric(df, c) for c in (
        'rows_processed', 'physical_read_requests', 'physical_write_requests', 'direct_reads', 'direct_writes')}
    waits = {c: (_numeric(df, c) / 1000).round(2) for c in (
        'application_wait_time', 'concurrency_wait_time', 'cluster_wait_time', 'user_io_wait_time')}
    plan_hash = pd.to_numeric(_column(df, 'plan_hash_value'), errors='coerce')

    records = []
    for idx, row in df.iterrows():
        module = to_text(row.get('module'))
        action = to_text(row.get('action'))
        record = {
            'connection_id': connection_id,
            'sql_id': to_text(row.get('sql_id')),
            'plan_hash_value': None if pd.isna(plan_hash[idx]) else int(plan_hash[idx]),
            'parsing_schema_name': to_text(row.get('parsing_schema_name')),
            'module': module[:64] if module else None,
            'action': action[:64] if action else None,
            'sql_text': truncate_bytes(to_text(row.get('sql_text')), max_text_bytes),
            'executions': int(executions[idx]),
            'elapsed_time_ms': float(elapsed_ms[idx]),
            'cpu_time_ms': float(cpu_ms[idx]),
            'buffer_gets': int(gets[idx]),
            'disk_reads': int(disk[idx]),
            'performance_grade': grade(elapsed_ms[idx], gets[idx]),
            'source': source,
            'collected_at': collected_at,
        }
        for column, series in counters.items():
            record[column] = int(series[idx])
        for column, series in waits.items():
            record[f"{column}_ms"] = float(series[idx])
        records.append(record)
    return records
