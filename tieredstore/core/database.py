"""Async durable store with SQLModel and SQLAlchemy 2.0.

The durable store is the source of truth. Every failure here is fatal to
the calling operation, so errors are logged and re-raised as StorageFault
rather than swallowed.
"""

import base64
import json
import logging
import time
from contextlib import asynccontextmanager
from typing import Awaitable, Callable, Dict, Iterable, List, Optional, Tuple, TypeVar

from sqlalchemy import and_, delete, or_, select, update
from sqlalchemy.exc import IntegrityError, OperationalError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlmodel import SQLModel

from tieredstore.core.config import Settings
from tieredstore.core.errors import NotFound, StorageFault, TransactionConflict
from tieredstore.core.logging import get_logger
from tieredstore.models.entity import EntityKey
from tieredstore.models.tables import EntityRow, KVRow

logger = get_logger(__name__)

T = TypeVar("T")

# Lock/serialization errors that mean "another writer got there first"
_TRANSIENT_MARKERS = (
    "database is locked",
    "deadlock detected",
    "could not serialize access",
    "lock wait timeout",
)


def is_transient(err: Exception) -> bool:
    """Whether a backend error is worth retrying the transaction for."""
    if isinstance(err, IntegrityError):
        return True
    if isinstance(err, OperationalError):
        msg = str(err).lower()
        return any(marker in msg for marker in _TRANSIENT_MARKERS)
    return False


class _Conflict(Exception):
    """A version-checked write found the row changed underneath it."""


def encode_cursor(expires_at: float, key: str) -> str:
    raw = json.dumps([expires_at, key]).encode("utf-8")
    return base64.urlsafe_b64encode(raw).decode("ascii")


def decode_cursor(cursor: str) -> Tuple[float, str]:
    try:
        expires_at, key = json.loads(base64.urlsafe_b64decode(cursor.encode("ascii")))
    except (ValueError, TypeError) as e:
        raise ValueError(f"Malformed cursor: {cursor!r}") from e
    return float(expires_at), key


class Transaction:
    """Unit of work handed to ``Database.run_in_transaction`` callbacks.

    Reads remember the row version they saw; writes only succeed if that
    version is still current. A write to a key that was read as absent is
    an insert and conflicts with any concurrent insert of the same key.
    """

    def __init__(self, session: AsyncSession):
        self.session = session
        self._versions: Dict[EntityKey, Optional[int]] = {}

    async def get(self, key: EntityKey) -> bytes:
        stmt = select(EntityRow.payload, EntityRow.version).where(
            EntityRow.kind == key.kind, EntityRow.name == key.name
        )
        row = (await self.session.execute(stmt)).one_or_none()
        if row is None:
            self._versions[key] = None
            raise NotFound(str(key))
        self._versions[key] = row.version
        return row.payload

    async def put(self, key: EntityKey, payload: bytes) -> None:
        if key not in self._versions:
            # Blind write: no prior read to conflict with
            await _upsert_entity(self.session, key, payload)
            return

        version = self._versions[key]
        if version is None:
            self.session.add(EntityRow(kind=key.kind, name=key.name, payload=payload))
            await self.session.flush()
            self._versions[key] = 1
            return

        stmt = (
            update(EntityRow)
            .where(EntityRow.kind == key.kind, EntityRow.name == key.name,
                   EntityRow.version == version)
            .values(payload=payload, version=version + 1, updated_at=time.time())
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        if result.rowcount == 0:
            raise _Conflict(str(key))
        self._versions[key] = version + 1

    async def delete(self, key: EntityKey) -> None:
        stmt = delete(EntityRow).where(EntityRow.kind == key.kind, EntityRow.name == key.name)
        version = self._versions.get(key)
        if version is not None:
            stmt = stmt.where(EntityRow.version == version)
        result = await self.session.execute(stmt.execution_options(synchronize_session=False))
        if version is not None and result.rowcount == 0:
            raise _Conflict(str(key))
        self._versions[key] = None


async def _upsert_entity(session: AsyncSession, key: EntityKey, payload: bytes) -> None:
    stmt = (
        update(EntityRow)
        .where(EntityRow.kind == key.kind, EntityRow.name == key.name)
        .values(payload=payload, version=EntityRow.version + 1, updated_at=time.time())
        .execution_options(synchronize_session=False)
    )
    result = await session.execute(stmt)
    if result.rowcount == 0:
        session.add(EntityRow(kind=key.kind, name=key.name, payload=payload))
        await session.flush()


class Database:
    """Async durable store client."""

    def __init__(self, settings: Settings):
        self.settings = settings
        self.engine = None
        self.async_session = None

    async def startup(self):
        """Initialize database connection and create tables."""
        logging.getLogger("aiosqlite").setLevel(logging.WARNING)
        logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)

        engine_kwargs = {"echo": self.settings.database_echo}
        if not self.settings.database_url.startswith("sqlite"):
            engine_kwargs.update(
                pool_size=self.settings.database_pool_size,
                max_overflow=self.settings.database_max_overflow,
                pool_pre_ping=True,
            )

        try:
            self.engine = create_async_engine(self.settings.database_url, **engine_kwargs)
            self.async_session = async_sessionmaker(
                bind=self.engine,
                class_=AsyncSession,
                expire_on_commit=False
            )

            async with self.engine.begin() as conn:
                await conn.run_sync(SQLModel.metadata.create_all)

            logger.info("Database initialized successfully")

        except SQLAlchemyError as e:
            logger.error("Database startup failed", error=str(e))
            raise StorageFault(f"startup: {e}") from e

    async def shutdown(self):
        """Close database connections."""
        if self.engine:
            await self.engine.dispose()
            logger.info("Database connections closed")

    @asynccontextmanager
    async def get_session(self):
        """Get async database session."""
        if not self.async_session:
            raise StorageFault("Database not initialized")

        async with self.async_session() as session:
            try:
                yield session
            except Exception:
                await session.rollback()
                raise

    @asynccontextmanager
    async def _storage_errors(self, operation: str, **context):
        try:
            yield
        except SQLAlchemyError as e:
            logger.error("Durable store operation failed", operation=operation,
                         error=str(e), **context)
            raise StorageFault(f"{operation}: {e}") from e

    # ============================================================================
    # Entities
    # ============================================================================

    async def get(self, key: EntityKey) -> bytes:
        """Fetch an entity payload. Raises NotFound if absent."""
        async with self._storage_errors("get", key=str(key)):
            async with self.get_session() as session:
                row = await session.get(EntityRow, (key.kind, key.name))

        if row is None:
            raise NotFound(str(key))
        return row.payload

    async def put(self, key: EntityKey, payload: bytes) -> None:
        """Unconditionally store an entity payload."""
        await self.put_multi([(key, payload)])

    async def put_multi(self, items: Iterable[Tuple[EntityKey, bytes]]) -> None:
        """Store several payloads in one commit. All or nothing."""
        items = list(items)
        if not items:
            return

        async with self._storage_errors("put", count=len(items), first_key=str(items[0][0])):
            for attempt in range(2):
                try:
                    async with self.get_session() as session:
                        for key, payload in items:
                            await _upsert_entity(session, key, payload)
                        await session.commit()
                    return
                except IntegrityError:
                    # Lost an insert race; the row now exists so the retry updates it
                    if attempt:
                        raise
                    logger.debug("Concurrent insert during put, retrying", count=len(items))

    async def delete(self, key: EntityKey) -> None:
        """Delete an entity. Deleting a missing entity is not an error."""
        async with self._storage_errors("delete", key=str(key)):
            async with self.get_session() as session:
                await session.execute(
                    delete(EntityRow)
                    .where(EntityRow.kind == key.kind, EntityRow.name == key.name)
                    .execution_options(synchronize_session=False)
                )
                await session.commit()

    async def run_in_transaction(self, fn: Callable[[Transaction], Awaitable[T]],
                                 attempts: Optional[int] = None) -> T:
        """Run ``fn`` atomically, re-running it when a concurrent writer conflicts.

        ``fn`` may run more than once and must not have side effects outside
        the transaction. Anything ``fn`` raises rolls back and propagates
        unchanged. Raises TransactionConflict once ``attempts`` are used up.
        """
        attempts = attempts or self.settings.transaction_attempts

        for attempt in range(1, attempts + 1):
            try:
                async with self.get_session() as session:
                    result = await fn(Transaction(session))
                    await session.commit()
                return result
            except _Conflict as e:
                logger.debug("Transaction conflict", attempt=attempt, key=str(e))
            except SQLAlchemyError as e:
                if not is_transient(e):
                    logger.error("Transaction failed", attempt=attempt, error=str(e))
                    raise StorageFault(f"transaction: {e}") from e
                logger.debug("Transient transaction error", attempt=attempt, error=str(e))

        logger.warning("Transaction retries exhausted", attempts=attempts)
        raise TransactionConflict(attempts)

    # ============================================================================
    # Expiring key-value rows
    # ============================================================================

    async def get_kv(self, key: str) -> KVRow:
        """Fetch a KV row, expired or not. Raises NotFound if absent."""
        async with self._storage_errors("get_kv", key=key):
            async with self.get_session() as session:
                row = await session.get(KVRow, key)

        if row is None:
            raise NotFound(key)
        return row

    async def put_kv(self, key: str, value: bytes, expires_at: Optional[float]) -> None:
        """Create or overwrite a KV row."""
        expires_at = expires_at or None

        async with self._storage_errors("put_kv", key=key):
            for attempt in range(2):
                try:
                    async with self.get_session() as session:
                        existing = await session.get(KVRow, key)
                        if existing:
                            existing.value = value
                            existing.expires_at = expires_at
                        else:
                            session.add(KVRow(key=key, value=value, expires_at=expires_at))
                        await session.commit()
                    return
                except IntegrityError:
                    if attempt:
                        raise
                    logger.debug("Concurrent insert during put_kv, retrying", key=key)

    async def delete_kv(self, key: str) -> None:
        async with self._storage_errors("delete_kv", key=key):
            async with self.get_session() as session:
                await session.execute(
                    delete(KVRow).where(KVRow.key == key)
                    .execution_options(synchronize_session=False)
                )
                await session.commit()

    async def query_expired_kv_keys(self, cutoff: float, limit: int,
                                    cursor: Optional[str] = None) -> Tuple[List[str], Optional[str]]:
        """Keys of rows that expired before ``cutoff``, oldest first.

        Returns ``(keys, next_cursor)``. Passing ``next_cursor`` back resumes
        strictly after the last row returned, whether or not that row has
        since been deleted.
        """
        stmt = select(KVRow.key, KVRow.expires_at).where(
            KVRow.expires_at.is_not(None),
            KVRow.expires_at < cutoff,
        )
        if cursor:
            last_expires, last_key = decode_cursor(cursor)
            stmt = stmt.where(or_(
                KVRow.expires_at > last_expires,
                and_(KVRow.expires_at == last_expires, KVRow.key > last_key),
            ))
        stmt = stmt.order_by(KVRow.expires_at, KVRow.key).limit(limit)

        async with self._storage_errors("query_expired_kv_keys", cutoff=cutoff):
            async with self.get_session() as session:
                rows = (await session.execute(stmt)).all()

        if not rows:
            return [], cursor
        last = rows[-1]
        return [row.key for row in rows], encode_cursor(last.expires_at, last.key)

    async def delete_kv_keys(self, keys: List[str]) -> int:
        """Delete a batch of KV rows in one statement. Returns rows removed."""
        if not keys:
            return 0

        async with self._storage_errors("delete_kv_keys", count=len(keys)):
            async with self.get_session() as session:
                result = await session.execute(
                    delete(KVRow).where(KVRow.key.in_(keys))
                    .execution_options(synchronize_session=False)
                )
                await session.commit()
        return result.rowcount
