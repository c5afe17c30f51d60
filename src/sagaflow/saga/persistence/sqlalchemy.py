# Copyright 2026 Firefly Software Solutions Inc.
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.
"""SQLAlchemy (async) implementation of :class:`SagaStatePort`.

Each saga is one row of ``saga_instances``: the full instance as JSON next
to the indexed ``status``, ``stuck`` and ``version`` columns.  Compare-and-
swap is a single ``UPDATE ... WHERE correlation_id = :id AND version =
:expected`` whose row count tells whether the write won.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

from sqlalchemy import JSON, Boolean, DateTime, Integer, String, select, text, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from sagaflow.kernel.exceptions import (
    DuplicateKeyException,
    SagaNotFoundException,
    VersionConflictException,
)
from sagaflow.saga.core.instance import SagaInstance
from sagaflow.saga.types import SagaStatus

logger = logging.getLogger(__name__)


class Base(DeclarativeBase):
    """SQLAlchemy declarative base for sagaflow tables."""


class SagaInstanceEntity(Base):
    """Row holding one serialised :class:`SagaInstance`."""

    __tablename__ = "saga_instances"

    correlation_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    saga_name: Mapped[str] = mapped_column(String(255), index=True)
    status: Mapped[str] = mapped_column(String(32), index=True)
    stuck: Mapped[bool] = mapped_column(Boolean, default=False, index=True)
    version: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    data: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))


def _row_values(instance: SagaInstance, version: int) -> dict[str, Any]:
    data = instance.to_dict()
    data["version"] = version
    return {
        "saga_name": instance.saga_name,
        "status": instance.status.value,
        "stuck": instance.stuck,
        "version": version,
        "data": data,
        "created_at": instance.created_at,
        "updated_at": instance.updated_at,
    }


def _not_found(correlation_id: str) -> SagaNotFoundException:
    return SagaNotFoundException(
        f"Saga '{correlation_id}' not found",
        code="SAGA_NOT_FOUND",
        context={"correlation_id": correlation_id},
    )


class SqlAlchemySagaStateStore:
    """Durable :class:`SagaStatePort` backed by any SQLAlchemy async driver.

    Args:
        engine: The async engine to use.  The store does not own it unless
            built with :meth:`from_url`.
    """

    def __init__(self, engine: AsyncEngine, *, owns_engine: bool = False) -> None:
        self._engine = engine
        self._owns_engine = owns_engine
        self._session_factory: async_sessionmaker[AsyncSession] = async_sessionmaker(engine, expire_on_commit=False)

    @classmethod
    def from_url(cls, url: str, *, echo: bool = False) -> SqlAlchemySagaStateStore:
        return cls(create_async_engine(url, echo=echo), owns_engine=True)

    async def initialize(self) -> None:
        """Create the ``saga_instances`` table if it does not exist."""
        async with self._engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def close(self) -> None:
        if self._owns_engine:
            await self._engine.dispose()

    # -- create / load ------------------------------------------------------

    async def create(self, instance: SagaInstance) -> SagaInstance:
        entity = SagaInstanceEntity(correlation_id=instance.correlation_id, **_row_values(instance, 0))
        try:
            async with self._session_factory() as session, session.begin():
                session.add(entity)
        except IntegrityError as exc:
            raise DuplicateKeyException(
                f"Saga '{instance.correlation_id}' already exists",
                code="DUPLICATE_SAGA_INSTANCE",
                context={"correlation_id": instance.correlation_id},
            ) from exc
        return SagaInstance.from_dict(entity.data)

    async def load(self, correlation_id: str) -> SagaInstance:
        async with self._session_factory() as session:
            stmt = select(SagaInstanceEntity.data).where(SagaInstanceEntity.correlation_id == correlation_id)
            data = (await session.execute(stmt)).scalar_one_or_none()
        if data is None:
            raise _not_found(correlation_id)
        return SagaInstance.from_dict(data)

    # -- conditional update -------------------------------------------------

    async def compare_and_swap(
        self, correlation_id: str, expected_version: int, new_instance: SagaInstance
    ) -> SagaInstance:
        values = _row_values(new_instance, expected_version + 1)
        stmt = (
            update(SagaInstanceEntity)
            .where(
                SagaInstanceEntity.correlation_id == correlation_id,
                SagaInstanceEntity.version == expected_version,
            )
            .values(**values)
        )
        async with self._session_factory() as session, session.begin():
            result = await session.execute(stmt)
            if result.rowcount == 0:  # type: ignore[attr-defined]
                current = (
                    await session.execute(
                        select(SagaInstanceEntity.version).where(SagaInstanceEntity.correlation_id == correlation_id)
                    )
                ).scalar_one_or_none()
                if current is None:
                    raise _not_found(correlation_id)
                raise VersionConflictException(
                    f"Saga '{correlation_id}' is at version {current}, expected {expected_version}",
                    code="VERSION_CONFLICT",
                    context={
                        "correlation_id": correlation_id,
                        "expected_version": expected_version,
                        "actual_version": current,
                    },
                )
        return SagaInstance.from_dict(values["data"])

    # -- queries ------------------------------------------------------------

    async def find_active(self) -> list[SagaInstance]:
        stmt = select(SagaInstanceEntity.data).where(
            SagaInstanceEntity.status.in_([SagaStatus.RUNNING.value, SagaStatus.COMPENSATING.value])
        )
        return await self._fetch(stmt)

    async def find_stuck(self) -> list[SagaInstance]:
        stmt = select(SagaInstanceEntity.data).where(SagaInstanceEntity.stuck.is_(True))
        return await self._fetch(stmt)

    async def is_healthy(self) -> bool:
        try:
            async with self._engine.connect() as conn:
                await conn.execute(text("SELECT 1"))
        except SQLAlchemyError:
            logger.warning("Saga state store health check failed", exc_info=True)
            return False
        return True

    async def _fetch(self, stmt: Any) -> list[SagaInstance]:
        async with self._session_factory() as session:
            rows = (await session.execute(stmt)).scalars().all()
        return [SagaInstance.from_dict(data) for data in rows]
