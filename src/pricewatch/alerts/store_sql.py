"""Alert store backed by the relational ``alerts`` table via SQLAlchemy."""

from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Any, Optional

import structlog
from sqlalchemy import Boolean, DateTime, Engine, Float, Integer, String, create_engine, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column

from pricewatch.alerts.rules import AlertDefinition
from pricewatch.alerts.store import definitions_from_rows
from pricewatch.errors import StoreError
from pricewatch.utils.time import ms_to_dt

log = structlog.get_logger("alert_store_sql")


class Base(DeclarativeBase):
    """Declarative base for alert tables."""


class AlertRow(Base):
    """One user-defined threshold alert. Written by the API, read by the worker."""

    __tablename__ = "alerts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    coin_id: Mapped[str] = mapped_column(String(64), nullable=False)
    vs_currency: Mapped[str] = mapped_column(String(16), nullable=False, default="usd")
    type: Mapped[str] = mapped_column(String(16), nullable=False)
    value: Mapped[float] = mapped_column(Float, nullable=False)
    window_minutes: Mapped[int] = mapped_column(Integer, nullable=False, default=5)
    cooldown_sec: Mapped[int] = mapped_column(Integer, nullable=False, default=300)
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    last_triggered_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    def as_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "coin_id": self.coin_id,
            "vs_currency": self.vs_currency,
            "type": self.type,
            "value": self.value,
            "cooldown_sec": self.cooldown_sec,
            "active": self.active,
            "last_triggered_at": self.last_triggered_at,
        }


class SqlAlertStore:
    """
    Blocking SQLAlchemy sessions run on a worker thread so the poll loop
    never stalls on the database.
    """

    def __init__(self, db_url: str, *, create_schema: bool = False) -> None:
        self._engine: Engine = create_engine(db_url, future=True, pool_pre_ping=True)
        if create_schema:
            Base.metadata.create_all(self._engine)

    def _list_active(self) -> list[AlertDefinition]:
        with Session(self._engine) as session:
            rows = session.scalars(
                select(AlertRow).where(AlertRow.active.is_(True)).order_by(AlertRow.id)
            ).all()
            return definitions_from_rows(r.as_dict() for r in rows)

    def _mark_triggered(self, alert_id: int, at_ms: int) -> None:
        with Session(self._engine) as session:
            res = session.execute(
                update(AlertRow).where(AlertRow.id == alert_id).values(last_triggered_at=ms_to_dt(at_ms))
            )
            session.commit()
            if res.rowcount == 0:
                raise StoreError(f"alert {alert_id} not found")

    def _add(self, row: AlertRow) -> int:
        with Session(self._engine) as session:
            session.add(row)
            session.commit()
            return row.id

    async def list_active(self) -> list[AlertDefinition]:
        try:
            return await asyncio.to_thread(self._list_active)
        except SQLAlchemyError as e:
            log.error("alert_load_failed", err=str(e))
            raise StoreError(f"could not load alerts: {e}") from e

    async def mark_triggered(self, alert_id: int, at_ms: int) -> None:
        try:
            await asyncio.to_thread(self._mark_triggered, alert_id, at_ms)
        except SQLAlchemyError as e:
            raise StoreError(f"could not update alert {alert_id}: {e}") from e

    async def add(self, row: AlertRow) -> int:
        """Insert a row; used by tooling and tests, the worker never writes new alerts."""
        try:
            return await asyncio.to_thread(self._add, row)
        except SQLAlchemyError as e:
            raise StoreError(f"could not insert alert: {e}") from e

    def close(self) -> None:
        self._engine.dispose()
