import datetime
from unittest.mock import MagicMock

from sqlalchemy.exc import OperationalError

from perfhistory.models.performance import DailySummary
from perfhistory.services.aggregator import (
    ADDITIVE_FIELDS, DailyAggregator, batch_statistics, merge_summary, seed_summary,
)


DAY = datetime.date(2025, 1, 10)


def record(sql_id, executions, elapsed, gets, grade, hour=9, cpu=1.0, disk=0):
    return {
        'sql_id': sql_id, 'executions': executions, 'elapsed_time_ms': elapsed, 'cpu_time_ms': cpu,
        'buffer_gets': gets, 'disk_reads': disk, 'performance_grade': grade,
        'collected_at': datetime.datetime(2025, 1, 10, hour, 15),
    }


def test_batch_statistics():
    stats = batch_statistics([
        record('a', 10, 100.0, 1000, 'B'),
        record('b', 30, 300.0, 3000, 'B'),
        record('a', 5, 50.0, 500, 'A'),
    ])
    assert stats['total_sqls'] == 2
    assert stats['total_executions'] == 45
    assert stats['avg_elapsed_time_ms'] == 150.0
    assert stats['max_elapsed_time_ms'] == 300.0
    assert stats['max_buffer_gets'] == 3000
    assert stats['grade_a_count'] == 1
    assert stats['grade_b_count'] == 2
    assert stats['grade_f_count'] == 0
    assert stats['peak_hour'] == 9
    assert stats['peak_hour_executions'] == 45


def test_batch_statistics_empty():
    assert batch_statistics([]) is None


def test_merge_uses_unweighted_average():
    summary = DailySummary(
        connection_id='C1', summary_date=DAY, total_sqls=10, total_executions=100,
        avg_elapsed_time_ms=100.0, avg_cpu_time_ms=10.0, avg_buffer_gets=1000.0, avg_disk_reads=0.0,
        max_elapsed_time_ms=500.0, max_buffer_gets=9000, grade_a_count=5, grade_b_count=5,
        grade_c_count=0, grade_d_count=0, grade_f_count=0, peak_hour=8, peak_hour_executions=80,
        collection_count=1,
    )
    stats = batch_statistics([record('x', 200, 300.0, 100, 'B', hour=11)])
    now = datetime.datetime(2025, 1, 10, 11, 20)
    merge_summary(summary, stats, now)

    # plain mean of the stored and batch averages
    assert summary.avg_elapsed_time_ms == 200.0
    assert summary.total_sqls == 11
    assert summary.total_executions == 300
    assert summary.max_elapsed_time_ms == 500.0
    assert summary.max_buffer_gets == 9000
    assert summary.grade_b_count == 6
    assert summary.peak_hour == 11
    assert summary.peak_hour_executions == 200
    assert summary.collection_count == 2
    assert summary.last_collection_at == now


def test_merge_keeps_higher_stored_peak():
    summary = DailySummary(connection_id='C1', summary_date=DAY, peak_hour=8, peak_hour_executions=1000,
                           collection_count=3)
    merge_summary(summary, batch_statistics([record('x', 10, 1.0, 1, 'A', hour=12)]), datetime.datetime.now())
    assert summary.peak_hour == 8
    assert summary.collection_count == 4


def test_fold_seeds_then_merges(session_factory):
    aggregator = DailyAggregator(session_factory)
    first = aggregator.fold('C1', DAY, [record('a', 10, 100.0, 10, 'A')], now=datetime.datetime(2025, 1, 10, 9, 15))
    second = aggregator.fold('C1', DAY, [record('b', 20, 300.0, 10, 'B', hour=10)],
                             now=datetime.datetime(2025, 1, 10, 10, 15))

    assert first['collection_count'] == 1
    assert second['collection_count'] == 2
    assert second['total_sqls'] == 2
    assert second['avg_elapsed_time_ms'] == 200.0
    assert second['peak_hour'] == 10
    assert second['first_collection_at'] == datetime.datetime(2025, 1, 10, 9, 15)
    assert second['last_collection_at'] == datetime.datetime(2025, 1, 10, 10, 15)

    session = session_factory()
    assert session.query(DailySummary).count() == 1
    session.close()


def test_fold_absorbs_storage_errors():
    session = MagicMock()
    session.query.side_effect = OperationalError('SELECT', {}, Exception('database is locked'))
    aggregator = DailyAggregator(session_factory=lambda: session)

    assert aggregator.fold('C1', DAY, [record('a', 1, 1.0, 1, 'A')]) is None
    session.rollback.assert_called_once()
    session.close.assert_called_once()


def test_merging_same_batch_twice_doubles_counters():
    batch = [
        record('a', 10, 50.0, 500, 'A'),
        record('b', 20, 300.0, 4000, 'B'),
        record('c', 5, 800.0, 9000, 'C'),
        record('d', 2, 2000.0, 20000, 'D', hour=10),
        record('e', 1, 9000.0, 90000, 'F', hour=10),
    ]
    stats = batch_statistics(batch)
    summary = seed_summary('C1', DAY, stats, datetime.datetime(2025, 1, 10, 9, 15))
    merge_summary(summary, batch_statistics(batch), datetime.datetime(2025, 1, 10, 9, 25))

    for name in ADDITIVE_FIELDS:
        assert getattr(summary, name) == 2 * stats[name], name
    assert summary.total_sqls == 10
    assert summary.total_executions == 76
    assert [summary.grade_a_count, summary.grade_b_count, summary.grade_c_count,
            summary.grade_d_count, summary.grade_f_count] == [2, 2, 2, 2, 2]
    # same batch twice leaves averages and maxima unchanged
    assert summary.avg_elapsed_time_ms == stats['avg_elapsed_time_ms']
    assert summary.max_buffer_gets == stats['max_buffer_gets']
    assert summary.collection_count == 2


class LateSeedAggregator(DailyAggregator):
    """Misses the day's row on its first lookup, as a run racing another seed would."""

    def __init__(self, session_factory):
        super().__init__(session_factory)
        self.misses = 1

    def _find(self, session, connection_id, summary_date):
        if self.misses:
            self.misses -= 1
            return None
        return super()._find(session, connection_id, summary_date)


def test_fold_merges_when_another_run_seeded_first(session_factory):
    DailyAggregator(session_factory).fold('C1', DAY, [record('a', 10, 100.0, 10, 'A')],
                                          now=datetime.datetime(2025, 1, 10, 9, 15))
    result = LateSeedAggregator(session_factory).fold(
        'C1', DAY, [record('b', 20, 300.0, 10, 'B', hour=10)], now=datetime.datetime(2025, 1, 10, 9, 16))

    assert result is not None
    assert result['collection_count'] == 2
    assert result['total_sqls'] == 2
    assert result['total_executions'] == 30
    assert result['grade_b_count'] == 1

    session = session_factory()
    assert session.query(DailySummary).count() == 1
    session.close()
