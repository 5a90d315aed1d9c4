import concurrent.futures
import logging
import signal
import threading
import time
from datetime import datetime

from sqlalchemy import text

from perfhistory.clients.registry import InMemoryConnectionRegistry
from perfhistory.core.config import settings
from perfhistory.core.database import SessionLocal, engine
from perfhistory.core.errors import TelemetryError
from perfhistory.models.base import Base
from perfhistory.models.collection import CollectionSettings
from perfhistory.service import TelemetryService


PRUNE_INTERVAL_SECONDS = 24 * 60 * 60


def wait_for_db(timeout=60):
    start_time = time.time()
    while time.time() - start_time < timeout:
        session = SessionLocal()
        try:
            session.execute(text('SELECT 1'))
            return True
        except Exception:
            time.sleep(2)
        finally:
            session.close()
    return False


def enabled_connections(registry):
    session = SessionLocal()
    try:
        rows = session.query(CollectionSettings).filter(CollectionSettings.is_enabled.is_(True)).all()
        known = set(registry.connection_ids())
        return [(r.connection_id, r.collection_interval_minutes) for r in rows if r.connection_id in known]
    finally:
        session.close()


def start_schedules(service, registry):
    targets = enabled_connections(registry)
    if not targets:
        logging.info("No enabled collection settings found")
        return

    def start(connection_id, interval):
        return service.start_collection(connection_id, interval)

    with concurrent.futures.ThreadPoolExecutor(max_workers=settings.MAX_WORKERS) as executor:
        futures = {executor.submit(start, cid, interval): cid for cid, interval in targets}
        for f in concurrent.futures.as_completed(futures):
            cid = futures[f]
            try:
                res = f.result()
                logging.info(f"[{cid}] {res['message']}")
            except TelemetryError as e:
                logging.error(f"[{cid}] Could not start collection: {e}")


if __name__ == '__main__':
    logging.basicConfig(level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
                        format='%(asctime)s - %(levelname)s - %(message)s')
    if not wait_for_db():
        logging.error("Durable storage unreachable, exiting")
        exit(1)
    Base.metadata.create_all(bind=engine)

    registry = InMemoryConnectionRegistry.from_file(settings.CONNECTIONS_FILE)
    service = TelemetryService(registry)
    start_schedules(service, registry)

    stop_event = threading.Event()

    def handle_signal(signum, frame):
        logging.info(f"Received signal {signum}, shutting down...")
        stop_event.set()

    signal.signal(signal.SIGINT, handle_signal)
    signal.signal(signal.SIGTERM, handle_signal)

    while not stop_event.is_set():
        try:
            cycle_start = datetime.now()
            deleted = service.collector.purge_expired_logs(settings.LOG_RETENTION_DAYS)
            logging.info(f"Log pruning done at {cycle_start:%Y-%m-%d %H:%M}, {deleted} removed")
        except Exception as e:
            logging.error(f"Log pruning error: {e}")
        stop_event.wait(PRUNE_INTERVAL_SECONDS)

    service.shutdown()
