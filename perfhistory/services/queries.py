"""
SQL issued against the monitored database, one builder per tier shape.

Tier C queries return raw cumulative counters; per-execution arithmetic is
done in pandas so the zero-execution rule lives in one place. Tier B
aggregates snapshot deltas in SQL because it has to group across snapshots.
"""

import re
from enum import Enum
from typing import Iterable

from perfhistory.core.errors import InvalidRequest


class SortKey(str, Enum):
    ELAPSED_TIME = 'elapsed_time'
    CPU_TIME = 'cpu_time'
    BUFFER_GETS = 'buffer_gets'
    DISK_READS = 'disk_reads'
    EXECUTIONS = 'executions'

    @classmethod
    def parse(cls, value) -> 'SortKey':
        if isinstance(value, cls):
            return value
        if not value:
            return cls.ELAPSED_TIME
        normalized = str(value).lower()
        if normalized.endswith('_ms'):
            normalized = normalized[:-3]
        try:
            return cls(normalized)
        except ValueError:
            raise InvalidRequest(f"Unsupported sort key: {value!r}")

    @property
    def result_column(self) -> str:
        """Column of a normalized history row the results are ordered by."""
        return {
            SortKey.ELAPSED_TIME: 'avg_elapsed_time',
            SortKey.CPU_TIME: 'avg_cpu_time',
            SortKey.BUFFER_GETS: 'avg_buffer_gets',
            SortKey.DISK_READS: 'avg_disk_reads',
            SortKey.EXECUTIONS: 'executions',
        }[self]

    @property
    def stored_column(self) -> str:
        return {
            SortKey.ELAPSED_TIME: 'elapsed_time_ms',
            SortKey.CPU_TIME: 'cpu_time_ms',
            SortKey.BUFFER_GETS: 'buffer_gets',
            SortKey.DISK_READS: 'disk_reads',
            SortKey.EXECUTIONS: 'executions',
        }[self]


_SCHEMA_RE = re.compile(r'^[A-Za-z0-9_$#]+$')


def schema_list_sql(schemas: Iterable[str]) -> str:
    """Quoted IN-list for excluded schemas. Names are validated because they are inlined."""
    names = []
    for schema in schemas:
        if not _SCHEMA_RE.match(schema or ''):
            raise InvalidRequest(f"Invalid schema name: {schema!r}")
        names.append(f"'{schema.upper()}'")
    # NOT IN () is invalid SQL; a placeholder keeps the predicate well formed
    return ', '.join(names) if names else "'-'"


SQL_ID_PATTERN = re.compile(r'^[a-z0-9]{13}$')


# ---------------------------------------------------------------------------
# Tier B: snapshot repository
# ---------------------------------------------------------------------------

def tier_b_window_query(sort_key: SortKey, excluded_schemas: Iterable[str], closed: bool) -> str:
    """Statements aggregated over every snapshot intersecting [:begin_dt, :end_dt]."""
    if closed:
        window = ("snap.end_interval_time >= TO_DATE(:begin_dt, 'YYYY-MM-DD HH24:MI:SS')\n"
                  "            AND snap.begin_interval_time <= TO_DATE(:end_dt, 'YYYY-MM-DD HH24:MI:SS')")
    else:
        window = ("snap.end_interval_time > TO_DATE(:begin_dt, 'YYYY-MM-DD HH24:MI:SS')\n"
                  "            AND snap.begin_interval_time < TO_DATE(:end_dt, 'YYYY-MM-DD HH24:MI:SS')")
    return f"""
      SELECT
        agg.sql_id,
        DBMS_LOB.SUBSTR(st.sql_text, 1000, 1) AS sql_text,
        agg.executions,
        agg.avg_elapsed_time,
        agg.avg_cpu_time,
        agg.avg_buffer_gets,
        agg.avg_disk_reads,
        agg.rows_processed,
        agg.parsing_schema_name,
        agg.first_seen,
        agg.last_seen
      FROM (
        SELECT * FROM (
          SELECT
            ss.sql_id,
            ss.dbid,
            MAX(ss.parsing_schema_name) AS parsing_schema_name,
            SUM(ss.executions_delta) AS executions,
            ROUND(AVG(ss.elapsed_time_delta / DECODE(ss.executions_delta, 0, 1, ss.executions_delta)) / 1000, 2) AS avg_elapsed_time,
            ROUND(AVG(ss.cpu_time_delta / DECODE(ss.executions_delta, 0, 1, ss.executions_delta)) / 1000, 2) AS avg_cpu_time,
            ROUND(AVG(ss.buffer_gets_delta / DECODE(ss.executions_delta, 0, 1, ss.executions_delta)), 0) AS avg_buffer_gets,
            ROUND(AVG(ss.disk_reads_delta / DECODE(ss.executions_delta, 0, 1, ss.executions_delta)), 0) AS avg_disk_reads,
            SUM(ss.rows_processed_delta) AS rows_processed,
            MIN(snap.begin_interval_time) AS first_seen,
            MAX(snap.end_interval_time) AS last_seen
          FROM dba_hist_sqlstat ss
          JOIN dba_hist_snapshot snap
            ON ss.snap_id = snap.snap_id AND ss.dbid = snap.dbid AND ss.instance_number = snap.instance_number
          WHERE {window}
            AND ss.executions_delta > 0
            AND ss.parsing_schema_name NOT IN ({schema_list_sql(excluded_schemas)})
          GROUP BY ss.sql_id, ss.dbid
          ORDER BY SUM(ss.{sort_key.value}_delta) DESC
        ) WHERE ROWNUM <= :row_limit
      ) agg
      LEFT JOIN dba_hist_sqltext st ON agg.sql_id = st.sql_id AND agg.dbid = st.dbid
    """


TIER_B_STATEMENT_HISTORY = """
  SELECT * FROM (
    SELECT
      TO_CHAR(snap.end_interval_time, 'YYYY-MM-DD HH24:MI:SS') AS snapshot_time,
      ss.executions_delta AS executions,
      ss.elapsed_time_delta / 1000000 AS elapsed_time_sec,
      ss.cpu_time_delta / 1000000 AS cpu_time_sec,
      ss.buffer_gets_delta AS buffer_gets,
      ss.disk_reads_delta AS disk_reads,
      ss.rows_processed_delta AS rows_processed
    FROM dba_hist_sqlstat ss
    JOIN dba_hist_snapshot snap
      ON ss.snap_id = snap.snap_id AND ss.dbid = snap.dbid AND ss.instance_number = snap.instance_number
    WHERE ss.sql_id = :sql_id
      AND snap.end_interval_time >= SYSDATE - :days
    ORDER BY snap.end_interval_time DESC
  ) WHERE ROWNUM <= :row_limit
"""


# ---------------------------------------------------------------------------
# Tier A: session sampling
# ---------------------------------------------------------------------------

TIER_A_WINDOW_QUERY = """
  SELECT
    top_sql.sql_id,
    s.sql_text,
    NVL(s.executions, top_sql.ash_samples) AS executions,
    NVL(s.elapsed_time, 0) AS elapsed_time,
    NVL(s.cpu_time, 0) AS cpu_time,
    NVL(s.buffer_gets, 0) AS buffer_gets,
    NVL(s.disk_reads, 0) AS disk_reads,
    NVL(s.rows_processed, 0) AS rows_processed,
    NVL(s.parsing_schema_name, top_sql.session_user) AS parsing_schema_name,
    top_sql.first_seen,
    top_sql.last_seen
  FROM (
    SELECT * FROM (
      SELECT
        h.sql_id,
        MIN(h.sample_time) AS first_seen,
        MAX(h.sample_time) AS last_seen,
        COUNT(*) AS ash_samples,
        (SELECT username FROM dba_users u WHERE u.user_id = MAX(h.user_id)) AS session_user
      FROM v$active_session_history h
      WHERE h.sql_id IS NOT NULL
        AND h.sample_time >= TO_DATE(:begin_dt, 'YYYY-MM-DD HH24:MI:SS')
        AND h.sample_time {end_op} TO_DATE(:end_dt, 'YYYY-MM-DD HH24:MI:SS')
      GROUP BY h.sql_id
      ORDER BY COUNT(*) DESC
    ) WHERE ROWNUM <= :row_limit
  ) top_sql
  LEFT JOIN (
    SELECT
      sql_id,
      MAX(SUBSTR(sql_text, 1, 1000)) AS sql_text,
      SUM(executions) AS executions,
      SUM(elapsed_time) AS elapsed_time,
      SUM(cpu_time) AS cpu_time,
      SUM(buffer_gets) AS buffer_gets,
      SUM(disk_reads) AS disk_reads,
      SUM(rows_processed) AS rows_processed,
      MAX(parsing_schema_name) AS parsing_schema_name
    FROM v$sql
    GROUP BY sql_id
  ) s ON s.sql_id = top_sql.sql_id
"""


def tier_a_window_query(closed: bool) -> str:
    return TIER_A_WINDOW_QUERY.replace('{end_op}', '<=' if closed else '<')


# ---------------------------------------------------------------------------
# Tier C: cursor cache
# ---------------------------------------------------------------------------

_TIER_C_COLUMNS = """
      sql_id,
      SUBSTR(sql_text, 1, 1000) AS sql_text,
      executions,
      elapsed_time,
      cpu_time,
      buffer_gets,
      disk_reads,
      rows_processed,
      first_load_time,
      last_active_time,
      parsing_schema_name"""


def tier_c_query(sort_key: SortKey, excluded_schemas: Iterable[str], time_filtered: bool,
                 closed: bool = True) -> str:
    time_filter = ''
    if time_filtered:
        end_op = '<=' if closed else '<'
        time_filter = ("\n      AND last_active_time >= TO_DATE(:begin_dt, 'YYYY-MM-DD HH24:MI:SS')"
                       f"\n      AND last_active_time {end_op} TO_DATE(:end_dt, 'YYYY-MM-DD HH24:MI:SS')")
    return f"""
  SELECT * FROM (
    SELECT{_TIER_C_COLUMNS}
    FROM v$sql
    WHERE executions > 0
      AND parsing_schema_name NOT IN ({schema_list_sql(excluded_schemas)}){time_filter}
    ORDER BY {sort_key.value} DESC
  ) WHERE ROWNUM <= :row_limit
"""


TIER_C_BY_ID_QUERY = f"""
  SELECT{_TIER_C_COLUMNS}
  FROM v$sql
  WHERE sql_id = :sql_id
  ORDER BY elapsed_time DESC
"""


def collection_query(excluded_schemas: Iterable[str], with_direct_io: bool = True) -> str:
    """Top statements of the cursor cache for one collection run."""
    direct_io = "direct_reads,\n      direct_writes," if with_direct_io else "0 AS direct_reads,\n      0 AS direct_writes,"
    return f"""
  SELECT * FROM (
    SELECT
      sql_id,
      plan_hash_value,
      parsing_schema_name,
      module,
      action,
      SUBSTR(sql_text, 1, 4000) AS sql_text,
      executions,
      elapsed_time,
      cpu_time,
      buffer_gets,
      disk_reads,
      rows_processed,
      physical_read_requests,
      physical_write_requests,
      {direct_io}
      application_wait_time,
      concurrency_wait_time,
      cluster_wait_time,
      user_io_wait_time
    FROM v$sql
    WHERE executions >= :min_execs
      AND parsing_schema_name NOT IN ({schema_list_sql(excluded_schemas)})
      AND sql_text NOT LIKE '%v$sql%'
      AND sql_text NOT LIKE '%dba_hist%'
    ORDER BY elapsed_time DESC
  ) WHERE ROWNUM <= :top_limit
"""
