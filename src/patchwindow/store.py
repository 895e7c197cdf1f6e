"""Maintenance window ledger.

The ledger records which monitored nodes already have an unmanage window.
It holds at most one row per node: ``nodeid`` is the primary key, so a
racing insert from an overlapping run fails with WindowExistsError instead
of silently creating a duplicate.

All timestamps are stored as naive UTC and returned timezone-aware.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import UTC, datetime

from sqlalchemy import DateTime, String, TypeDecorator, create_engine, delete, exists, select
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column, sessionmaker

from .models import MaintenanceWindow

logger = logging.getLogger(__name__)

TABLE_NAME = "unmanage_windows"


class DatastoreError(Exception):
    """Raised when the ledger cannot be read or written."""

    pass


class WindowExistsError(DatastoreError):
    """Raised when inserting a window for a node that already has one."""

    def __init__(self, node_id: str) -> None:
        super().__init__(f"A maintenance window already exists for node {node_id}")
        self.node_id = node_id


class UTCDateTime(TypeDecorator[datetime]):
    """DateTime stored as naive UTC, loaded as aware UTC."""

    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value: datetime | None, dialect: object) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            raise ValueError("Naive datetimes are not accepted by the window ledger")
        return value.astimezone(UTC).replace(tzinfo=None)

    def process_result_value(self, value: datetime | None, dialect: object) -> datetime | None:
        if value is None:
            return None
        return value.replace(tzinfo=UTC)


class Base(DeclarativeBase):
    pass


class WindowRow(Base):
    __tablename__ = TABLE_NAME

    nodeid: Mapped[str] = mapped_column(String(32), primary_key=True)
    ipaddress: Mapped[str] = mapped_column(String(45), nullable=False, default="")
    hostname: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    grp: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    startdt: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    enddt: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, index=True)

    @classmethod
    def from_window(cls, window: MaintenanceWindow) -> WindowRow:
        return cls(
            nodeid=window.node_id,
            ipaddress=window.ip_address,
            hostname=window.hostname,
            grp=window.group_name,
            startdt=window.start_time,
            enddt=window.end_time,
        )

    def to_window(self) -> MaintenanceWindow:
        return MaintenanceWindow(
            node_id=self.nodeid,
            ip_address=self.ipaddress,
            hostname=self.hostname,
            group_name=self.grp,
            start_time=self.startdt,
            end_time=self.enddt,
        )


def create_store_engine(url: str, timeout_seconds: int = 30) -> Engine:
    """Create an engine with a bounded connect timeout."""
    backend = make_url(url).get_backend_name()
    connect_args: dict[str, object] = {}
    if backend in ("mssql", "sqlite"):
        connect_args["timeout"] = timeout_seconds
    elif backend == "postgresql":
        connect_args["connect_timeout"] = timeout_seconds
    return create_engine(url, pool_pre_ping=True, connect_args=connect_args)


class WindowStore:
    """Ledger of maintenance windows keyed by node id."""

    def __init__(self, engine: Engine) -> None:
        self._engine = engine
        self._session_factory = sessionmaker(bind=engine, expire_on_commit=False)

    @contextmanager
    def _transaction(self, operation: str) -> Iterator[Session]:
        try:
            with self._session_factory() as session, session.begin():
                yield session
        except IntegrityError:
            raise
        except SQLAlchemyError as e:
            raise DatastoreError(f"Window ledger {operation} failed: {e}") from e

    def create_schema(self) -> None:
        """Create the ledger table if it does not exist."""
        try:
            Base.metadata.create_all(self._engine)
        except SQLAlchemyError as e:
            raise DatastoreError(f"Window ledger schema creation failed: {e}") from e

    def exists(self, node_id: str) -> bool:
        with self._transaction("check-exists") as session:
            return bool(session.scalar(select(exists().where(WindowRow.nodeid == node_id))))

    def insert(self, window: MaintenanceWindow) -> None:
        """Persist a window.

        Raises:
            WindowExistsError: If the node already has a window.
            DatastoreError: On any other datastore failure.
        """
        try:
            with self._transaction("insert") as session:
                session.add(WindowRow.from_window(window))
        except IntegrityError as e:
            raise WindowExistsError(window.node_id) from e

        logger.info(
            "Window recorded",
            extra={
                "source": "Insert",
                "node_id": window.node_id,
                "start": window.start_time.isoformat(),
                "end": window.end_time.isoformat(),
            },
        )

    def delete(self, node_id: str) -> bool:
        """Remove the window for a node. Returns True if a row was removed."""
        with self._transaction("delete") as session:
            result = session.execute(
                delete(WindowRow)
                .where(WindowRow.nodeid == node_id)
                .execution_options(synchronize_session=False)
            )
            removed = bool(result.rowcount)

        if removed:
            logger.info("Window removed", extra={"source": "Delete", "node_id": node_id})
        return removed

    def select_all(self) -> list[MaintenanceWindow]:
        with self._transaction("select-all") as session:
            rows = session.scalars(select(WindowRow).order_by(WindowRow.startdt)).all()
            return [row.to_window() for row in rows]

    def prune(self, now: datetime) -> int:
        """Delete every window whose end time is before ``now``.

        Returns:
            Number of windows removed.
        """
        with self._transaction("prune") as session:
            result = session.execute(
                delete(WindowRow)
                .where(WindowRow.enddt < now)
                .execution_options(synchronize_session=False)
            )
            pruned = result.rowcount or 0

        logger.info(
            "Expired windows pruned",
            extra={"source": "Prune", "pruned": pruned, "now": now.isoformat()},
        )
        return pruned
