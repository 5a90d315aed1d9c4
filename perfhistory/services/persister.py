import logging
from dataclasses import dataclass, field
from typing import List, Optional

from sqlalchemy.exc import SQLAlchemyError

from perfhistory.core.config import settings
from perfhistory.core.database import SessionLocal
from perfhistory.core.errors import RecordPersistenceError
from perfhistory.models.collection import RunStatus
from perfhistory.models.performance import PerformanceRecord


# Driver rejections plus bad values caught while building the row
INSERT_ERRORS = (SQLAlchemyError, ValueError, TypeError)


@dataclass
class PersistResult:
    inserted: List[dict] = field(default_factory=list)
    errors: List[RecordPersistenceError] = field(default_factory=list)
    batch_errors: List[str] = field(default_factory=list)

    @property
    def inserted_count(self) -> int:
        return len(self.inserted)

    @property
    def status(self) -> RunStatus:
        if not self.errors:
            return RunStatus.SUCCESS
        if self.inserted:
            return RunStatus.PARTIAL
        return RunStatus.FAILED

    def error_message(self) -> Optional[str]:
        if not self.errors:
            return None
        return '; '.join(str(e) for e in self.errors)


class BatchPersister:
    """
    Writes normalized records in fixed-size chunks. A chunk that fails is
    retried one record at a time so a single bad row only costs itself.
    """

    def __init__(self, session_factory=None, batch_size: Optional[int] = None):
        self.session_factory = session_factory or SessionLocal
        self.batch_size = batch_size or settings.INSERT_BATCH_SIZE

    def persist(self, records: List[dict]) -> PersistResult:
        result = PersistResult()
        for start in range(0, len(records), self.batch_size):
            batch = records[start:start + self.batch_size]
            try:
                self._insert(batch)
                result.inserted.extend(batch)
            except INSERT_ERRORS as e:
                logging.error(f"Batch insert error ({start}-{start + len(batch)}), first SQL_ID "
                              f"{batch[0].get('sql_id') if batch else None}: {e}")
                result.batch_errors.append(f"Batch {start}: {e}")
                self._insert_individually(batch, result)

        if result.errors:
            logging.warning(f"{len(result.errors)} records failed to insert, {result.inserted_count} inserted")
        return result

    def _insert(self, batch: List[dict]):
        session = self.session_factory()
        try:
            session.add_all([PerformanceRecord(**record) for record in batch])
            session.commit()
        except INSERT_ERRORS:
            session.rollback()
            raise
        finally:
            session.close()

    def _insert_individually(self, batch: List[dict], result: PersistResult):
        for record in batch:
            try:
                self._insert([record])
                result.inserted.append(record)
            except INSERT_ERRORS as e:
                reason = str(getattr(e, 'orig', None) or e)
                logging.error(f"Single insert error for SQL_ID {record.get('sql_id')}: {reason}")
                result.errors.append(RecordPersistenceError(record.get('sql_id'), reason))
