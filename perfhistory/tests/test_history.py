import datetime

import pandas as pd
import pytest

from conftest import STANDARD, FakeClient, FakeClientFactory, cache_frame, sql_id
from perfhistory.core.errors import ConfigurationError, InvalidIdentifier, InvalidRequest, StatementNotFound, TierUnavailable
from perfhistory.models.performance import PerformanceRecord
from perfhistory.services.history import HistoryQueryService
from perfhistory.services.tier_probe import TierProbe


TODAY = datetime.date(2025, 1, 10)


def make_service(session_factory, client, today=TODAY):
    return HistoryQueryService(FakeClientFactory(client), TierProbe(cache_seconds=300, timeout=5),
                               session_factory=session_factory, today=lambda: today)


def store(session_factory, connection_id, collected_at, n, elapsed=None, start=0):
    session = session_factory()
    for i in range(n):
        session.add(PerformanceRecord(
            connection_id=connection_id,
            sql_id=sql_id(start + i),
            sql_text=f"SELECT {i} FROM dual",
            executions=10,
            elapsed_time_ms=elapsed[i] if elapsed else float(i),
            cpu_time_ms=1.0,
            buffer_gets=100,
            disk_reads=1,
            rows_processed=10,
            performance_grade='A',
            source='v$sql',
            collected_at=collected_at,
        ))
    session.commit()
    session.close()


def awr_frame(rows):
    defaults = {
        'sql_text': 'SELECT 1 FROM dual', 'executions': 5, 'avg_elapsed_time': 10.0, 'avg_cpu_time': 5.0,
        'avg_buffer_gets': 100.0, 'avg_disk_reads': 1.0, 'rows_processed': 5, 'parsing_schema_name': 'APP',
        'first_seen': datetime.datetime(2025, 1, 8, 9, 0), 'last_seen': datetime.datetime(2025, 1, 8, 10, 0),
    }
    return pd.DataFrame([dict(defaults, **r) for r in rows])


def test_stored_records_answer_without_touching_tiers(session_factory):
    store(session_factory, 'C1', datetime.datetime(2025, 1, 10, 14, 5), 12)
    store(session_factory, 'C2', datetime.datetime(2025, 1, 10, 14, 5), 3, start=100)
    client = FakeClient()
    result = make_service(session_factory, client).query('C1', '2025-01-10')

    assert result['success'] is True
    assert result['source'] == 'database'
    assert result['count'] == 12
    assert result['date'] == '2025-01-10'
    assert result['time_filter'] is None
    assert client.calls == []
    elapsed = [row['avg_elapsed_time'] for row in result['data']]
    assert elapsed == sorted(elapsed, reverse=True)


def test_stored_records_filtered_by_hour(session_factory):
    for hour in (8, 9, 10, 11):
        store(session_factory, 'C1', datetime.datetime(2025, 1, 10, hour, 30), 1, start=hour)
    result = make_service(session_factory, FakeClient()).query('C1', '2025-01-10', '09:00', '10:00')

    assert result['source'] == 'database'
    assert sorted(row['sql_id'] for row in result['data']) == [sql_id(9), sql_id(10)]
    assert result['time_filter']['start_datetime'] == '2025-01-10 09:00:00'


def test_tier_b_serves_past_day(session_factory):
    client = FakeClient(responses={'awr': awr_frame([
        {'sql_id': sql_id(1), 'executions': 3},
        {'sql_id': sql_id(2), 'executions': 30},
    ])})
    result = make_service(session_factory, client).query('C1', '2025-01-08', sort_key='executions')

    assert result['source'] == 'tier_b'
    assert [row['sql_id'] for row in result['data']] == [sql_id(2), sql_id(1)]
    assert client.keys_called() == ['awr']
    params = client.calls[0]['params']
    assert params == {'begin_dt': '2025-01-08 00:00:00', 'end_dt': '2025-01-09 00:00:00', 'row_limit': 100}
    assert 'SUM(ss.executions_delta) DESC' in client.calls[0]['sql']


def test_limited_edition_skips_tier_b(session_factory):
    client = FakeClient(edition=STANDARD, responses={
        'probe': pd.DataFrame({'ok': [1]}),
        'ash': cache_frame([{'sql_id': sql_id(1), 'first_seen': None, 'last_seen': None}]),
        'v$sql': cache_frame([{'sql_id': sql_id(2)}]),
    })
    result = make_service(session_factory, client).query('C1', '2025-01-10', '09:00', '10:00')

    assert result['source'] == 'v$sql'
    assert client.keys_called() == ['v$sql']


def test_limited_edition_old_date_skips_tier_a(session_factory):
    client = FakeClient(edition=STANDARD, responses={
        'probe': pd.DataFrame({'ok': [1]}),
        'ash': cache_frame([{'sql_id': sql_id(1), 'first_seen': None, 'last_seen': None}]),
        'v$sql': cache_frame([{'sql_id': sql_id(2)}]),
    })
    result = make_service(session_factory, client, today=datetime.date(2025, 1, 13)).query('C1', '2025-01-10')

    assert result['source'] == 'v$sql_cache'
    assert [row['sql_id'] for row in result['data']] == [sql_id(2)]
    assert 'ash' not in client.keys_called()
    assert 'probe' not in client.keys_called()


def test_tier_a_uses_exact_window(session_factory):
    client = FakeClient(responses={
        'awr': TierUnavailable('awr', 'ORA-13717: Tuning Package License is needed'),
        'probe': pd.DataFrame({'ok': [1]}),
        'ash': cache_frame([{'sql_id': sql_id(1), 'first_seen': None, 'last_seen': None}]),
    })
    result = make_service(session_factory, client).query('C1', '2025-01-10', '09:00', '10:00')

    assert result['source'] == 'ash'
    assert client.keys_called() == ['awr', 'probe', 'ash']
    ash_call = client.calls[-1]
    assert ash_call['params']['begin_dt'] == '2025-01-10 09:00:00'
    assert ash_call['params']['end_dt'] == '2025-01-10 10:00:00'


def test_tier_b_failure_cascades_to_tier_c(session_factory):
    client = FakeClient(responses={
        'awr': TierUnavailable('awr', 'ORA-00942: table or view does not exist'),
        'v$sql': cache_frame([{'sql_id': sql_id(1)}]),
    })
    result = make_service(session_factory, client).query('C1', '2025-01-10', '09:00', '10:00')

    assert result['source'] == 'v$sql'
    assert client.keys_called() == ['awr', 'probe', 'v$sql']
    params = client.calls[-1]['params']
    assert params['begin_dt'] == '2025-01-10 08:59:00'
    assert params['end_dt'] == '2025-01-10 10:01:00'
    assert 'warning' not in result


def test_yesterday_still_filters_tier_c(session_factory):
    client = FakeClient(edition=STANDARD, responses={'v$sql': cache_frame([{'sql_id': sql_id(1)}])})
    result = make_service(session_factory, client, today=datetime.date(2025, 1, 11)).query('C1', '2025-01-10')
    assert result['source'] == 'v$sql'
    assert 'begin_dt' in client.calls[-1]['params']


def test_old_date_returns_unfiltered_cache(session_factory):
    client = FakeClient(edition=STANDARD, responses={'v$sql': cache_frame([
        {'sql_id': sql_id(1), 'elapsed_time': 1000},
        {'sql_id': sql_id(2), 'elapsed_time': 9000},
    ])})
    result = make_service(session_factory, client, today=datetime.date(2025, 1, 13)).query(
        'C1', '2025-01-10', '09:00', '10:00')

    assert result['source'] == 'v$sql_cache'
    assert result['count'] == 2
    assert 'time filter was not applied' in result['warning']
    assert 'begin_dt' not in client.calls[-1]['params']
    assert [row['sql_id'] for row in result['data']] == [sql_id(2), sql_id(1)]
    assert all(row['source'] == 'v$sql_cache' for row in result['data'])


def test_nothing_anywhere_is_none(session_factory):
    client = FakeClient(edition=STANDARD)
    result = make_service(session_factory, client).query('C1', '2025-01-10')
    assert result['success'] is True
    assert result['source'] == 'none'
    assert result['data'] == []
    assert result['count'] == 0


def test_per_execution_values_and_grades(session_factory):
    client = FakeClient(edition=STANDARD, responses={'v$sql': cache_frame([
        {'sql_id': sql_id(1), 'executions': 4, 'elapsed_time': 800000, 'buffer_gets': 8000},
        {'sql_id': sql_id(2), 'executions': 0, 'elapsed_time': 999999, 'buffer_gets': 999999},
    ])})
    rows = make_service(session_factory, client).query('C1', '2025-01-10')['data']
    by_id = {row['sql_id']: row for row in rows}

    assert by_id[sql_id(1)]['avg_elapsed_time'] == 200.0
    assert by_id[sql_id(1)]['avg_buffer_gets'] == 2000.0
    assert by_id[sql_id(1)]['performance_grade'] == 'B'
    assert by_id[sql_id(2)]['avg_elapsed_time'] == 0.0
    assert by_id[sql_id(2)]['performance_grade'] == 'A'


def test_ties_keep_tier_order(session_factory):
    client = FakeClient(edition=STANDARD, responses={'v$sql': cache_frame([
        {'sql_id': sql_id(1), 'elapsed_time': 5000},
        {'sql_id': sql_id(2), 'elapsed_time': 5000},
        {'sql_id': sql_id(3), 'elapsed_time': 9000},
        {'sql_id': sql_id(4), 'elapsed_time': 5000},
    ])})
    rows = make_service(session_factory, client).query('C1', '2025-01-10')['data']
    assert [row['sql_id'] for row in rows] == [sql_id(3), sql_id(1), sql_id(2), sql_id(4)]


def test_unexpected_failure_becomes_error_source(session_factory):
    client = FakeClient(edition=STANDARD, responses={'v$sql': RuntimeError('driver exploded')})
    result = make_service(session_factory, client).query('C1', '2025-01-10')
    assert result['success'] is False
    assert result['source'] == 'error'
    assert 'driver exploded' in result['warning']
    assert result['data'] == []


def test_sql_id_lookup(session_factory):
    client = FakeClient(responses={'v$sql': cache_frame([{'sql_id': 'abcd1234efgh5'}])})
    result = make_service(session_factory, client).query('C1', '2025-01-10', sql_id='abcd1234efgh5')
    assert result['source'] == 'v$sql'
    assert result['data'][0]['sql_id'] == 'abcd1234efgh5'
    assert client.calls[0]['params'] == {'sql_id': 'abcd1234efgh5'}


def test_sql_id_not_found(session_factory):
    client = FakeClient()
    with pytest.raises(StatementNotFound):
        make_service(session_factory, client).query('C1', '2025-01-10', sql_id='abcd1234efgh5')


@pytest.mark.parametrize('bad_id', ['ABCD1234EFGH5', 'abc', "abcd1234efg'5", 'abcd1234efgh56'])
def test_invalid_sql_id_touches_nothing(session_factory, bad_id):
    client = FakeClient()
    with pytest.raises(InvalidIdentifier):
        make_service(session_factory, client).query('C1', '2025-01-10', sql_id=bad_id)
    assert client.calls == []


def test_caller_errors_propagate(session_factory):
    service = make_service(session_factory, FakeClient())
    with pytest.raises(ConfigurationError):
        service.query('missing', '2025-01-10')
    with pytest.raises(ConfigurationError):
        service.query('', '2025-01-10')
    with pytest.raises(InvalidRequest):
        service.query('C1', '2025-01-10', sort_key='rows')
    with pytest.raises(InvalidRequest):
        service.query('C1', 'yesterday')


def test_sort_key_accepts_ms_suffix(session_factory):
    client = FakeClient(responses={'awr': awr_frame([{'sql_id': sql_id(1)}])})
    result = make_service(session_factory, client).query('C1', '2025-01-08', sort_key='cpu_time_ms')
    assert result['source'] == 'tier_b'
    assert 'SUM(ss.cpu_time_delta) DESC' in client.calls[0]['sql']


def test_statement_history_from_snapshots(session_factory):
    snapshots = pd.DataFrame({
        'snapshot_time': ['2025-01-10 10:00:00', '2025-01-10 09:00:00'],
        'executions': [5, 3], 'elapsed_time_sec': [0.5, 0.2], 'cpu_time_sec': [0.1, 0.1],
        'buffer_gets': [100, 60], 'disk_reads': [0, 1], 'rows_processed': [5, 3],
    })
    client = FakeClient(responses={'awr': snapshots})
    result = make_service(session_factory, client).statement_history('C1', 'abcd1234efgh5')
    assert result['source'] == 'tier_b'
    assert result['count'] == 2
    assert client.calls[0]['params']['days'] == 7


def test_statement_history_falls_back_to_cache(session_factory):
    client = FakeClient(edition=STANDARD, responses={'v$sql': cache_frame([{'sql_id': 'abcd1234efgh5'}])})
    result = make_service(session_factory, client).statement_history('C1', 'abcd1234efgh5')
    assert result['source'] == 'v$sql'
    assert result['count'] == 1
    assert 'warning' in result
    assert client.keys_called() == ['v$sql']


def test_caller_limit_caps_tier_b(session_factory):
    client = FakeClient(responses={'awr': awr_frame([
        {'sql_id': sql_id(i), 'executions': i} for i in range(1, 9)
    ])})
    result = make_service(session_factory, client).query('C1', '2025-01-08', sort_key='executions', limit=3)

    assert result['source'] == 'tier_b'
    assert client.calls[0]['params']['row_limit'] == 3
    assert [row['sql_id'] for row in result['data']] == [sql_id(8), sql_id(7), sql_id(6)]


def test_caller_limit_caps_tier_a(session_factory):
    client = FakeClient(responses={
        'awr': pd.DataFrame(),
        'probe': pd.DataFrame({'ok': [1]}),
        'ash': cache_frame([{'sql_id': sql_id(i), 'first_seen': None, 'last_seen': None} for i in range(10)]),
    })
    result = make_service(session_factory, client).query('C1', '2025-01-10', '09:00', '10:00', limit=4)

    assert result['source'] == 'ash'
    assert result['count'] == 4
    assert client.calls[-1]['params']['row_limit'] == 4


def test_caller_limit_caps_tier_c(session_factory):
    client = FakeClient(edition=STANDARD, responses={'v$sql': cache_frame([
        {'sql_id': sql_id(i), 'elapsed_time': 1000 * (i + 1)} for i in range(30)
    ])})
    result = make_service(session_factory, client, today=datetime.date(2025, 1, 13)).query(
        'C1', '2025-01-10', limit=5)

    assert result['source'] == 'v$sql_cache'
    assert result['count'] == 5
    assert client.calls[-1]['params']['row_limit'] == 5
    assert [row['sql_id'] for row in result['data']] == [sql_id(i) for i in (29, 28, 27, 26, 25)]


def test_large_limit_is_held_to_tier_cap(session_factory):
    client = FakeClient(edition=STANDARD, responses={'v$sql': cache_frame([{'sql_id': sql_id(1)}])})
    make_service(session_factory, client).query('C1', '2025-01-10', limit=400)
    assert client.calls[-1]['params']['row_limit'] == 100


def test_whole_day_tier_c_filter_is_half_open(session_factory):
    client = FakeClient(edition=STANDARD, responses={'v$sql': cache_frame([{'sql_id': sql_id(1)}])})
    make_service(session_factory, client).query('C1', '2025-01-10')

    call = client.calls[-1]
    assert call['params']['begin_dt'] == '2025-01-10 00:00:00'
    assert call['params']['end_dt'] == '2025-01-11 00:00:00'
    assert 'last_active_time < TO_DATE(:end_dt' in call['sql']
    assert '<= TO_DATE(:end_dt' not in call['sql']


def test_time_filtered_tier_c_filter_is_closed(session_factory):
    client = FakeClient(edition=STANDARD, responses={'v$sql': cache_frame([{'sql_id': sql_id(1)}])})
    make_service(session_factory, client).query('C1', '2025-01-10', '09:00', '10:00')
    assert 'last_active_time <= TO_DATE(:end_dt' in client.calls[-1]['sql']
