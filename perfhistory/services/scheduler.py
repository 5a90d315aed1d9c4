import datetime
import logging
import threading
from dataclasses import dataclass, field
from typing import Dict, Optional

from perfhistory.core.errors import TelemetryError
from perfhistory.models.collection import ALLOWED_INTERVALS


STOP_JOIN_SECONDS = 30


@dataclass
class ScheduleState:
    connection_id: str
    interval_minutes: int
    is_running: bool = True
    last_collection_at: Optional[datetime.datetime] = None
    next_collection_at: Optional[datetime.datetime] = None
    collection_count: int = 0
    error_count: int = 0
    last_error: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            'connection_id': self.connection_id,
            'is_running': self.is_running,
            'interval_minutes': self.interval_minutes,
            'last_collection_at': self.last_collection_at,
            'next_collection_at': self.next_collection_at,
            'collection_count': self.collection_count,
            'error_count': self.error_count,
            'last_error': self.last_error,
        }


@dataclass
class _Schedule:
    state: ScheduleState
    stop_event: threading.Event = field(default_factory=threading.Event)
    thread: Optional[threading.Thread] = None


class CollectionScheduler:
    """
    Periodic collection per connection. Each schedule is a daemon thread that
    runs once immediately, then waits on its stop event for the interval.
    Starting and stopping are serialised; the runs themselves are not, so a
    manual collect_now can overlap a scheduled run.
    """

    def __init__(self, collector, clock=datetime.datetime.now):
        self.collector = collector
        self.clock = clock
        self._schedules: Dict[str, _Schedule] = {}
        self._lock = threading.Lock()

    def start(self, connection_id: str, interval_minutes: int = 10) -> ScheduleState:
        if interval_minutes not in ALLOWED_INTERVALS:
            logging.warning(f"[{connection_id}] Interval {interval_minutes}m not in {ALLOWED_INTERVALS}, using 10m")
            interval_minutes = 10
        with self._lock:
            self._stop_locked(connection_id)
            schedule = _Schedule(state=ScheduleState(connection_id=connection_id, interval_minutes=interval_minutes))
            schedule.thread = threading.Thread(
                target=self._loop, args=(schedule,), name=f"collect-{connection_id}", daemon=True)
            self._schedules[connection_id] = schedule
            schedule.thread.start()
        logging.info(f"[{connection_id}] Scheduled collection every {interval_minutes} minutes")
        return schedule.state

    def stop(self, connection_id: str) -> bool:
        with self._lock:
            stopped = self._stop_locked(connection_id)
        if stopped:
            logging.info(f"[{connection_id}] Scheduled collection stopped")
        return stopped

    def stop_all(self, timeout: float = STOP_JOIN_SECONDS):
        """Signal every schedule, then wait up to `timeout` seconds for each in-flight run."""
        with self._lock:
            schedules = list(self._schedules.values())
            for connection_id in list(self._schedules):
                self._stop_locked(connection_id)
        for schedule in schedules:
            thread = schedule.thread
            if thread is None or thread is threading.current_thread():
                continue
            thread.join(timeout)
            if thread.is_alive():
                logging.warning(f"[{schedule.state.connection_id}] Collection still running after {timeout}s, not waiting")
        logging.info("All scheduled collections stopped")

    def is_running(self, connection_id: str) -> bool:
        with self._lock:
            return connection_id in self._schedules

    def update_interval(self, connection_id: str, interval_minutes: int) -> bool:
        """Restart the schedule only when the interval actually changed."""
        with self._lock:
            schedule = self._schedules.get(connection_id)
            if schedule is None or schedule.state.interval_minutes == interval_minutes:
                return False
        self.start(connection_id, interval_minutes)
        return True

    def collect_now(self, connection_id: str):
        return self.collector.collect(connection_id)

    def state(self, connection_id: str) -> Optional[dict]:
        with self._lock:
            schedule = self._schedules.get(connection_id)
        return schedule.state.to_dict() if schedule else None

    def states(self) -> Dict[str, dict]:
        with self._lock:
            return {cid: s.state.to_dict() for cid, s in self._schedules.items()}

    def _stop_locked(self, connection_id: str) -> bool:
        schedule = self._schedules.pop(connection_id, None)
        if schedule is None:
            return False
        schedule.stop_event.set()
        schedule.state.is_running = False
        schedule.state.next_collection_at = None
        return True

    def _loop(self, schedule: _Schedule):
        state = schedule.state
        interval = datetime.timedelta(minutes=state.interval_minutes)
        while not schedule.stop_event.is_set():
            self._run_once(state)
            state.next_collection_at = self.clock() + interval
            if schedule.stop_event.wait(interval.total_seconds()):
                break

    def _run_once(self, state: ScheduleState):
        try:
            outcome = self.collector.collect(state.connection_id)
            state.last_collection_at = self.clock()
            if outcome.skipped:
                logging.info(f"[{state.connection_id}] Scheduled run skipped: {outcome.message}")
                return
            state.collection_count += 1
            if not outcome.success:
                state.error_count += 1
                state.last_error = outcome.message
        except TelemetryError as e:
            state.error_count += 1
            state.last_error = str(e)
            logging.error(f"[{state.connection_id}] Scheduled collection error: {e}")
        except Exception as e:
            state.error_count += 1
            state.last_error = str(e)
            logging.exception(f"[{state.connection_id}] Unexpected error in scheduled collection")
