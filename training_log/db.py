from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Awaitable, Callable, Iterable, List, Optional, TypeVar, Union

from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine
from sqlalchemy.orm import sessionmaker
from sqlmodel import SQLModel, select
from sqlmodel.ext.asyncio.session import AsyncSession

from .errors import StorageUnavailable, TransactionAborted
from .models import (
    COLLECTION_INDEXES,
    COLLECTION_MODELS,
    SCHEMA_VERSION,
    SCHEMA_VERSION_KEY,
    TEMPLATE_SLOTS,
    BodyPart,
    Collection,
    MetaEntry,
    Template,
    new_id,
    primary_key_name,
)
from .settings import get_settings

logger = logging.getLogger("training_log.db")

T = TypeVar("T")
CollectionName = Union[Collection, str]

SEED_COLLECTIONS = (Collection.BODY_PARTS, Collection.TEMPLATES, Collection.META)


def get_engine_url(url: Optional[str] = None) -> str:
    if url is None:
        url = get_settings().database_url
    if url.startswith("sqlite:///") and not url.startswith("sqlite+aiosqlite:///"):
        # Use aiosqlite for async support
        url = url.replace("sqlite:///", "sqlite+aiosqlite:///", 1)
    return url


def resolve_collection(collection: CollectionName) -> Collection:
    try:
        return Collection(collection)
    except ValueError:
        raise ValueError(f"unknown collection: {collection!r}") from None


def _check_record(collection: Collection, record: SQLModel) -> type[SQLModel]:
    model = COLLECTION_MODELS[collection]
    if not isinstance(record, model):
        raise TypeError(
            f"{type(record).__name__} cannot be stored in {collection.value!r}, expected {model.__name__}"
        )
    # Same bounds the backup codec enforces, so every stored record can be exported
    if collection is Collection.SETS:
        if record.set_index < 1:
            raise ValueError(f"set {record.id!r}: set_index must be at least 1, got {record.set_index}")
        if record.weight < 0 or record.reps < 0:
            raise ValueError(f"set {record.id!r}: weight and reps must not be negative")
    elif collection is Collection.TEMPLATES and record.slot not in TEMPLATE_SLOTS:
        raise ValueError(f"template slot must be between 1 and 6, got {record.slot}")
    return model


class Transaction:
    """Operations bound to one session and a fixed set of collections.

    Writes are flushed straight away so that reads later in the same
    transaction see them. Nothing is committed until the enclosing
    ``Store.transaction`` block exits cleanly.
    """

    def __init__(self, session: AsyncSession, scope: Iterable[Collection]) -> None:
        self._session = session
        self._scope = frozenset(scope)

    def _resolve(self, collection: CollectionName) -> Collection:
        name = resolve_collection(collection)
        if name not in self._scope:
            raise ValueError(f"collection {name.value!r} is not part of this transaction")
        return name

    async def get_all(self, collection: CollectionName) -> List[Any]:
        model = COLLECTION_MODELS[self._resolve(collection)]
        result = await self._session.exec(select(model))
        return list(result.all())

    async def get_by_key(self, collection: CollectionName, key: Any) -> Optional[Any]:
        model = COLLECTION_MODELS[self._resolve(collection)]
        return await self._session.get(model, key)

    async def put(self, collection: CollectionName, record: SQLModel) -> Any:
        model = _check_record(self._resolve(collection), record)
        await self._session.merge(record)
        await self._session.flush()
        return getattr(record, primary_key_name(model))

    async def delete(self, collection: CollectionName, key: Any) -> None:
        model = COLLECTION_MODELS[self._resolve(collection)]
        existing = await self._session.get(model, key)
        if existing is not None:
            await self._session.delete(existing)
            await self._session.flush()

    async def query_by_index(self, collection: CollectionName, index_name: str, value: Any) -> List[Any]:
        name = self._resolve(collection)
        model = COLLECTION_MODELS[name]
        attr = COLLECTION_INDEXES.get(name, {}).get(index_name)
        if attr is None:
            raise ValueError(f"collection {name.value!r} has no index {index_name!r}")
        result = await self._session.exec(select(model).where(getattr(model, attr) == value))
        return list(result.all())

    async def count_all(self, collection: CollectionName) -> int:
        model = COLLECTION_MODELS[self._resolve(collection)]
        result = await self._session.exec(select(func.count()).select_from(model))
        return result.one()


class Store:
    """Handle on the SQLite-backed training log.

    Open it with ``await Store.open(url)`` and close it when done, or use it as an
    async context manager. All reads and writes go through this object.
    """

    def __init__(self, engine: AsyncEngine) -> None:
        self._engine = engine
        self._sessionmaker = sessionmaker(
            engine, class_=AsyncSession, expire_on_commit=False, autoflush=False
        )
        self._write_lock = asyncio.Lock()

    @classmethod
    async def open(cls, url: Optional[str] = None, *, seed: bool = True) -> "Store":
        engine_url = get_engine_url(url)
        engine: Optional[AsyncEngine] = None
        try:
            engine = create_async_engine(engine_url, echo=False, future=True)
            # Create tables
            async with engine.begin() as conn:
                await conn.run_sync(
                    SQLModel.metadata.create_all,
                    tables=[model.__table__ for model in COLLECTION_MODELS.values()],
                )
        except (SQLAlchemyError, OSError) as exc:
            if engine is not None:
                await engine.dispose()
            raise StorageUnavailable(f"cannot open store at {engine_url}: {exc}") from exc

        store = cls(engine)
        if seed:
            try:
                await store.seed_defaults()
            except Exception:
                await store.close()
                raise
        return store

    async def close(self) -> None:
        await self._engine.dispose()

    async def __aenter__(self) -> "Store":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    @asynccontextmanager
    async def transaction(self, collections: Iterable[CollectionName]) -> AsyncIterator[Transaction]:
        scope = [resolve_collection(c) for c in collections]
        if not scope:
            raise ValueError("a transaction needs at least one collection")
        async with self._write_lock:
            async with self._sessionmaker() as session:
                try:
                    yield Transaction(session, scope)
                    await session.commit()
                except Exception as exc:
                    await session.rollback()
                    logger.warning(
                        "transaction on %s aborted: %s",
                        ", ".join(c.value for c in scope),
                        exc,
                    )
                    raise TransactionAborted(f"transaction aborted: {exc}") from exc

    async def run_transaction(
        self,
        collections: Iterable[CollectionName],
        body: Callable[[Transaction], Awaitable[T]],
    ) -> T:
        async with self.transaction(collections) as tx:
            return await body(tx)

    @asynccontextmanager
    async def _reading(self, collection: Collection) -> AsyncIterator[Transaction]:
        try:
            async with self._sessionmaker() as session:
                yield Transaction(session, [collection])
        except SQLAlchemyError as exc:
            raise StorageUnavailable(f"cannot read {collection.value!r}: {exc}") from exc

    async def get_all(self, collection: CollectionName) -> List[Any]:
        name = resolve_collection(collection)
        async with self._reading(name) as tx:
            return await tx.get_all(name)

    async def get_by_key(self, collection: CollectionName, key: Any) -> Optional[Any]:
        name = resolve_collection(collection)
        async with self._reading(name) as tx:
            return await tx.get_by_key(name, key)

    async def query_by_index(self, collection: CollectionName, index_name: str, value: Any) -> List[Any]:
        name = resolve_collection(collection)
        async with self._reading(name) as tx:
            return await tx.query_by_index(name, index_name, value)

    async def count_all(self, collection: CollectionName) -> int:
        name = resolve_collection(collection)
        async with self._reading(name) as tx:
            return await tx.count_all(name)

    async def put(self, collection: CollectionName, record: SQLModel) -> Any:
        name = resolve_collection(collection)
        _check_record(name, record)
        async with self.transaction([name]) as tx:
            return await tx.put(name, record)

    async def delete(self, collection: CollectionName, key: Any) -> None:
        name = resolve_collection(collection)
        async with self.transaction([name]) as tx:
            await tx.delete(name, key)

    async def get_meta(self, key: str, default: Any = None) -> Any:
        entry = await self.get_by_key(Collection.META, key)
        return default if entry is None else entry.value

    async def set_meta(self, key: str, value: Any) -> None:
        await self.put(Collection.META, MetaEntry(key=key, value=value))

    async def seed_defaults(self, body_parts: Optional[Iterable[str]] = None) -> bool:
        """Write the initial body parts, empty template slots and schema version.

        Runs once: a store that already has body parts is left alone and
        ``False`` is returned.
        """
        names = list(body_parts) if body_parts is not None else get_settings().seed_body_parts
        async with self.transaction(SEED_COLLECTIONS) as tx:
            if await tx.count_all(Collection.BODY_PARTS) > 0:
                return False
            for name in names:
                await tx.put(Collection.BODY_PARTS, BodyPart(id=new_id(), name=name))
            for slot in TEMPLATE_SLOTS:
                await tx.put(Collection.TEMPLATES, Template(slot=slot, name="", exercise_ids=[]))
            await tx.put(Collection.META, MetaEntry(key=SCHEMA_VERSION_KEY, value=SCHEMA_VERSION))
        logger.info("seeded %d body parts and %d template slots", len(names), len(TEMPLATE_SLOTS))
        return True
