"""
SqlLocationStore — journey locations in any SQLAlchemy-supported database.

Every lock mutation is a single conditional UPDATE whose WHERE clause carries
the precondition (unlocked, or held with our token). rowcount tells whether
we won, so two workers racing on the same row cannot both succeed.
"""
from __future__ import annotations

import structlog
from datetime import datetime
from typing import Optional

from sqlalchemy import and_, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from database.models import JourneyLocationRow
from database.session import session_scope
from journeys.locations import LocationStore
from models.schemas import JourneyLocation

logger = structlog.get_logger()

_Row = JourneyLocationRow


def _pk(customer_id: str, journey_id: str):
    return and_(_Row.customer_id == customer_id, _Row.journey_id == journey_id)


class SqlLocationStore(LocationStore):

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._factory = session_factory

    async def create(self, location: JourneyLocation) -> bool:
        try:
            async with session_scope(self._factory) as db:
                row = await db.get(_Row, (location.customer_id, location.journey_id))
                if row is not None and row.finalized_at is None:
                    return False
                if row is None:
                    row = _Row(customer_id=location.customer_id, journey_id=location.journey_id)
                    db.add(row)
                row.apply(location)
        except IntegrityError:
            logger.info("location_create_conflict",
                        customer_id=location.customer_id,
                        journey_id=location.journey_id)
            return False
        return True

    async def get(self, customer_id: str, journey_id: str) -> Optional[JourneyLocation]:
        async with session_scope(self._factory) as db:
            row = await db.get(_Row, (customer_id, journey_id))
            return row.to_model() if row else None

    async def try_lock(self, customer_id, journey_id, token, now, stale_before=None) -> bool:
        free = _Row.locked.is_(False)
        if stale_before is not None:
            free = or_(free, _Row.locked_at < stale_before)
        stmt = (
            update(_Row)
            .where(_pk(customer_id, journey_id), _Row.finalized_at.is_(None), free)
            .values(locked=True, lock_token=token, locked_at=now)
        )
        async with session_scope(self._factory) as db:
            result = await db.execute(stmt)
            return result.rowcount == 1

    async def unlock(self, customer_id, journey_id, token, step_id=None, now=None) -> bool:
        conditions = [_pk(customer_id, journey_id), _Row.locked.is_(True)]
        if token is not None:
            conditions.append(_Row.lock_token == token)
        async with session_scope(self._factory) as db:
            row = await db.get(_Row, (customer_id, journey_id))
            if row is None:
                return False
            values = {"locked": False, "lock_token": None, "locked_at": None}
            if step_id and step_id != row.current_step_id:
                values.update(current_step_id=step_id, step_entered_at=now, message_sent=False)
            result = await db.execute(update(_Row).where(*conditions).values(**values))
            return result.rowcount == 1

    async def move(self, customer_id, journey_id, token, step_id, now) -> bool:
        stmt = (
            update(_Row)
            .where(_pk(customer_id, journey_id), _Row.locked.is_(True), _Row.lock_token == token)
            .values(current_step_id=step_id, step_entered_at=now, message_sent=False, locked_at=now)
        )
        async with session_scope(self._factory) as db:
            result = await db.execute(stmt)
            return result.rowcount == 1

    async def claim(self, customer_id, journey_id, token, new_token, now) -> bool:
        stmt = (
            update(_Row)
            .where(_pk(customer_id, journey_id), _Row.finalized_at.is_(None),
                   _Row.locked.is_(True), _Row.lock_token == token)
            .values(lock_token=new_token, locked_at=now)
        )
        async with session_scope(self._factory) as db:
            result = await db.execute(stmt)
            return result.rowcount == 1

    async def restore(self, customer_id, journey_id, token, snapshot) -> bool:
        stmt = (
            update(_Row)
            .where(_pk(customer_id, journey_id), _Row.locked.is_(True), _Row.lock_token == token)
            .values(current_step_id=snapshot.current_step_id,
                    step_entered_at=snapshot.step_entered_at,
                    message_sent=snapshot.message_sent,
                    locked=False, lock_token=None, locked_at=None)
        )
        async with session_scope(self._factory) as db:
            result = await db.execute(stmt)
            return result.rowcount == 1

    async def set_message_sent(self, customer_id, journey_id, token, sent=True) -> bool:
        stmt = (
            update(_Row)
            .where(_pk(customer_id, journey_id), _Row.locked.is_(True), _Row.lock_token == token)
            .values(message_sent=sent)
        )
        async with session_scope(self._factory) as db:
            result = await db.execute(stmt)
            return result.rowcount == 1

    async def finalize(self, customer_id, journey_id, now) -> None:
        stmt = (
            update(_Row)
            .where(_pk(customer_id, journey_id))
            .values(finalized_at=now, locked=False, lock_token=None, locked_at=None)
        )
        async with session_scope(self._factory) as db:
            await db.execute(stmt)

    async def stale_locks(self, locked_before: datetime) -> list[JourneyLocation]:
        stmt = select(_Row).where(_Row.locked.is_(True), _Row.locked_at < locked_before)
        async with session_scope(self._factory) as db:
            result = await db.execute(stmt)
            return [row.to_model() for row in result.scalars().all()]
