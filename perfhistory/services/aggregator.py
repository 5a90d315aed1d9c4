import datetime
import logging
from typing import List, Optional

import pandas as pd
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from perfhistory.core.database import SessionLocal
from perfhistory.models.performance import DailySummary
from .grading import GRADES


ADDITIVE_FIELDS = (
    'total_sqls', 'total_executions',
    'grade_a_count', 'grade_b_count', 'grade_c_count', 'grade_d_count', 'grade_f_count',
)
AVERAGE_FIELDS = ('avg_elapsed_time_ms', 'avg_cpu_time_ms', 'avg_buffer_gets', 'avg_disk_reads')
MAXIMUM_FIELDS = ('max_elapsed_time_ms', 'max_buffer_gets')


def batch_statistics(records: List[dict]) -> Optional[dict]:
    """Summary statistics of one run's records, or None for an empty run."""
    if not records:
        return None
    df = pd.DataFrame(records)
    for column in ('executions', 'elapsed_time_ms', 'cpu_time_ms', 'buffer_gets', 'disk_reads'):
        if column not in df.columns:
            df[column] = 0
        df[column] = pd.to_numeric(df[column], errors='coerce').fillna(0)

    grades = df['performance_grade'].value_counts()
    stats = {
        'total_sqls': int(df['sql_id'].nunique()),
        'total_executions': int(df['executions'].sum()),
        'avg_elapsed_time_ms': float(df['elapsed_time_ms'].mean()),
        'avg_cpu_time_ms': float(df['cpu_time_ms'].mean()),
        'avg_buffer_gets': float(df['buffer_gets'].mean()),
        'avg_disk_reads': float(df['disk_reads'].mean()),
        'max_elapsed_time_ms': float(df['elapsed_time_ms'].max()),
        'max_buffer_gets': int(df['buffer_gets'].max()),
    }
    for letter in GRADES:
        stats[f"grade_{letter.lower()}_count"] = int(grades.get(letter, 0))

    if 'collection_hour' not in df.columns and 'collected_at' in df.columns:
        df['collection_hour'] = pd.to_datetime(df['collected_at']).dt.hour
    if 'collection_hour' in df.columns:
        by_hour = df.groupby('collection_hour')['executions'].sum()
        stats['peak_hour'] = int(by_hour.idxmax())
        stats['peak_hour_executions'] = int(by_hour.max())
    return stats


def seed_summary(connection_id: str, summary_date: datetime.date, stats: dict, now: datetime.datetime) -> DailySummary:
    summary = DailySummary(
        connection_id=connection_id,
        summary_date=summary_date,
        collection_count=1,
        first_collection_at=now,
        last_collection_at=now,
    )
    for name in ADDITIVE_FIELDS + AVERAGE_FIELDS + MAXIMUM_FIELDS:
        setattr(summary, name, stats[name])
    summary.peak_hour = stats.get('peak_hour')
    summary.peak_hour_executions = stats.get('peak_hour_executions')
    return summary


def merge_summary(summary: DailySummary, stats: dict, now: datetime.datetime) -> DailySummary:
    """
    Fold one more run into an existing day.

    Averages are the plain mean of the stored average and the batch average,
    not weighted by sample counts. Stored summaries were built this way, so it
    is kept to avoid shifting historical values.
    """
    for name in ADDITIVE_FIELDS:
        setattr(summary, name, (getattr(summary, name) or 0) + stats[name])
    for name in AVERAGE_FIELDS:
        setattr(summary, name, ((getattr(summary, name) or 0) + stats[name]) / 2)
    for name in MAXIMUM_FIELDS:
        setattr(summary, name, max(getattr(summary, name) or 0, stats[name]))

    peak = stats.get('peak_hour_executions')
    if peak is not None and peak > (summary.peak_hour_executions or 0):
        summary.peak_hour = stats['peak_hour']
        summary.peak_hour_executions = peak

    summary.collection_count = (summary.collection_count or 0) + 1
    if summary.first_collection_at is None:
        summary.first_collection_at = now
    summary.last_collection_at = max(now, summary.last_collection_at) if summary.last_collection_at else now
    return summary


class DailyAggregator:
    def __init__(self, session_factory=None):
        self.session_factory = session_factory or SessionLocal

    def fold(self, connection_id: str, summary_date: datetime.date, records: List[dict],
             now: Optional[datetime.datetime] = None) -> Optional[dict]:
        """Seed or merge the (connection, day) summary. Failures are logged, never raised."""
        stats = batch_statistics(records)
        if stats is None:
            return None
        now = now or datetime.datetime.now()

        session = self.session_factory()
        try:
            summary = self._find(session, connection_id, summary_date)
            if summary is not None:
                merge_summary(summary, stats, now)
                session.commit()
                return summary.to_dict()

            summary = seed_summary(connection_id, summary_date, stats, now)
            session.add(summary)
            try:
                session.commit()
            except IntegrityError:
                # another run seeded the same day first
                session.rollback()
                logging.info(f"Daily summary for {connection_id} {summary_date} already exists, merging")
                summary = self._find(session, connection_id, summary_date)
                merge_summary(summary, stats, now)
                session.commit()
            return summary.to_dict()
        except SQLAlchemyError as e:
            session.rollback()
            logging.error(f"Failed to update daily summary for {connection_id} {summary_date}: {e}")
            return None
        finally:
            session.close()

    def _find(self, session, connection_id: str, summary_date: datetime.date) -> Optional[DailySummary]:
        return session.query(DailySummary).filter_by(
            connection_id=connection_id, summary_date=summary_date).first()
