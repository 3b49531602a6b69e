"""
Durable Record Store.

Append-only keyed store of telemetry records with a per-record delivered flag,
plus the small settings table that carries the recording session across
restarts. Delivered rows are flagged and kept (``delivered_at`` is stamped);
``purge_delivered`` drops them on demand.
"""

import logging
from datetime import datetime, timezone
from typing import Iterable, List, Optional

from sqlalchemy import select, update, delete, func
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker

from train_audit.app.core.exceptions import StorageUnavailableError
from train_audit.app.models.telemetry_record import TelemetryRecordRow
from train_audit.app.models.recorder_setting import RecorderSetting
from train_audit.app.schemas.telemetry import (
    TelemetryRecord, Position, DerivedFields, RecordingSession, utcnow
)

logger = logging.getLogger("train_audit.store")

SESSION_KEY = "session"
MAX_ID_COLLISIONS = 16


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive datetimes
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def row_to_record(row: TelemetryRecordRow) -> TelemetryRecord:
    position = None
    if row.latitude is not None and row.longitude is not None:
        position = Position(
            latitude=row.latitude,
            longitude=row.longitude,
            speed=row.speed,
            heading=row.heading,
            accuracy=row.accuracy,
        )
    return TelemetryRecord(
        id=row.record_id,
        captured_at=_aware(row.captured_at),
        position=position,
        derived=DerivedFields.model_validate(row.derived or {}),
        synthetic=row.synthetic,
        delivered=row.delivered,
    )


class RecordStore:
    """
    Durable record store over one async session factory.
    
    Each execution context builds its own instance on its own engine; SQLite
    transactions give readers a consistent snapshot while another context
    appends.
    """
    
    def __init__(self, session_factory: async_sessionmaker):
        self._sessions = session_factory
    
    async def append(self, record: TelemetryRecord) -> str:
        """
        Insert a new record and return the id it was stored under.
        
        An id collision is resolved by suffixing ``-1``, ``-2``, ...; the
        record's ``id`` is updated to the stored value.
        
        Raises:
            StorageUnavailableError: If the medium cannot be written
        """
        base_id = record.id
        for attempt in range(MAX_ID_COLLISIONS):
            candidate = base_id if attempt == 0 else f"{base_id}-{attempt}"
            row = TelemetryRecordRow(
                record_id=candidate,
                captured_at=_utc(record.captured_at),
                latitude=record.position.latitude if record.position else None,
                longitude=record.position.longitude if record.position else None,
                speed=record.position.speed if record.position else None,
                heading=record.position.heading if record.position else None,
                accuracy=record.position.accuracy if record.position else None,
                synthetic=record.synthetic,
                derived=record.derived.model_dump(mode="json"),
                delivered=False,
            )
            try:
                async with self._sessions() as db:
                    db.add(row)
                    await db.commit()
            except IntegrityError:
                logger.debug("Record id collision", extra={"record_id": candidate})
                continue
            except (SQLAlchemyError, OSError) as exc:
                raise StorageUnavailableError(str(exc)) from exc
            record.id = candidate
            record.delivered = False
            return candidate
        raise StorageUnavailableError(f"Could not allocate an id for record {base_id}")
    
    async def list_undelivered(self, limit: Optional[int] = None) -> List[TelemetryRecord]:
        """
        Return undelivered records in insertion order.
        
        Raises:
            StorageUnavailableError: If the medium cannot be read
        """
        query = select(TelemetryRecordRow).where(
            TelemetryRecordRow.delivered == False  # noqa: E712
        ).order_by(TelemetryRecordRow.seq)
        if limit:
            query = query.limit(limit)
        try:
            async with self._sessions() as db:
                result = await db.execute(query)
                rows = result.scalars().all()
        except (SQLAlchemyError, OSError) as exc:
            raise StorageUnavailableError(str(exc)) from exc
        return [row_to_record(row) for row in rows]
    
    async def count_undelivered(self) -> int:
        try:
            async with self._sessions() as db:
                result = await db.execute(
                    select(func.count()).select_from(TelemetryRecordRow).where(
                        TelemetryRecordRow.delivered == False  # noqa: E712
                    )
                )
                return result.scalar_one()
        except (SQLAlchemyError, OSError) as exc:
            raise StorageUnavailableError(str(exc)) from exc
    
    async def mark_delivered(self, ids: Iterable[str]) -> int:
        """
        Flag records as delivered. Idempotent; unknown ids are ignored.
        
        Returns:
            Number of records that changed state
        """
        id_list = list(set(ids))
        if not id_list:
            return 0
        stmt = update(TelemetryRecordRow).where(
            TelemetryRecordRow.record_id.in_(id_list),
            TelemetryRecordRow.delivered == False  # noqa: E712
        ).values(
            delivered=True,
            delivered_at=utcnow()
        )
        try:
            async with self._sessions() as db:
                result = await db.execute(stmt)
                await db.commit()
                return result.rowcount
        except (SQLAlchemyError, OSError) as exc:
            raise StorageUnavailableError(str(exc)) from exc
    
    async def evict_oldest(self, max_count: int) -> int:
        """
        Keep at most ``max_count`` records.
        
        Delivered rows go first, then the oldest undelivered ones. Dropping
        undelivered data here is the configured loss policy for a sink that
        stays unreachable.
        
        Returns:
            Number of records removed
        """
        if max_count <= 0:
            return 0
        try:
            async with self._sessions() as db:
                total = (await db.execute(
                    select(func.count()).select_from(TelemetryRecordRow)
                )).scalar_one()
                excess = total - max_count
                if excess <= 0:
                    return 0
                victims = (await db.execute(
                    select(TelemetryRecordRow.seq, TelemetryRecordRow.delivered).order_by(
                        TelemetryRecordRow.delivered.desc(), TelemetryRecordRow.seq
                    ).limit(excess)
                )).all()
                seqs = [seq for seq, _ in victims]
                lost = sum(1 for _, delivered in victims if not delivered)
                await db.execute(delete(TelemetryRecordRow).where(TelemetryRecordRow.seq.in_(seqs)))
                await db.commit()
        except (SQLAlchemyError, OSError) as exc:
            raise StorageUnavailableError(str(exc)) from exc
        
        if lost:
            logger.warning(
                "Evicted undelivered records",
                extra={"evicted": len(seqs), "undelivered_lost": lost, "max_count": max_count}
            )
        return len(seqs)
    
    async def purge_delivered(self) -> int:
        """Delete every acknowledged record."""
        try:
            async with self._sessions() as db:
                result = await db.execute(
                    delete(TelemetryRecordRow).where(TelemetryRecordRow.delivered == True)  # noqa: E712
                )
                await db.commit()
                return result.rowcount
        except (SQLAlchemyError, OSError) as exc:
            raise StorageUnavailableError(str(exc)) from exc
    
    # Recording session
    
    async def load_session(self) -> RecordingSession:
        try:
            async with self._sessions() as db:
                setting = await db.get(RecorderSetting, SESSION_KEY)
        except (SQLAlchemyError, OSError) as exc:
            raise StorageUnavailableError(str(exc)) from exc
        if setting is None or not setting.value:
            return RecordingSession()
        return RecordingSession.model_validate(setting.value)
    
    async def save_session(self, session: RecordingSession) -> None:
        try:
            async with self._sessions() as db:
                await db.merge(RecorderSetting(key=SESSION_KEY, value=session.model_dump(mode="json")))
                await db.commit()
        except (SQLAlchemyError, OSError) as exc:
            raise StorageUnavailableError(str(exc)) from exc
    
    async def clear_session(self) -> None:
        """Clear the active flag, keeping the last interval."""
        session = await self.load_session()
        await self.save_session(RecordingSession(interval_ms=session.interval_ms))
