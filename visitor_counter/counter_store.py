"""Durable and in-memory counter stores."""

from __future__ import annotations

from collections.abc import Awaitable
import inspect
from threading import Lock
from typing import Callable, Protocol

from sqlalchemy import func, select
from sqlalchemy.dialects.postgresql import insert as postgresql_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from visitor_counter.models import Counter

CounterHook = Callable[[str], Awaitable[None] | None]


class StoreIOError(RuntimeError):
    """Raised when an external counting store fails or times out."""


class CounterStoreError(StoreIOError):
    """Raised when a counter increment could not be stored."""


class CounterStore(Protocol):
    """Increment-by-one store; absent counters implicitly start at 0."""

    async def increment(self, counter_id: str) -> None:
        """Add one to ``counter_id``, creating it when missing."""


class InMemoryCounterStore:
    """Process-local counter values keyed by counter id."""

    def __init__(self) -> None:
        self._values: dict[str, int] = {}
        self._lock = Lock()

    async def increment(self, counter_id: str) -> None:
        with self._lock:
            self._values[counter_id] = self._values.get(counter_id, 0) + 1

    async def get(self, counter_id: str) -> int | None:
        with self._lock:
            return self._values.get(counter_id)

    async def list_counters(self) -> dict[str, int]:
        with self._lock:
            return dict(sorted(self._values.items()))

    def clear(self) -> None:
        with self._lock:
            self._values.clear()


class HookCounterStore:
    """Delegate every increment to a user callback (sync or async)."""

    def __init__(self, hook: CounterHook) -> None:
        self._hook = hook

    async def increment(self, counter_id: str) -> None:
        try:
            result = self._hook(counter_id)
            if inspect.isawaitable(result):
                await result
        except StoreIOError:
            raise
        except Exception as exc:
            raise CounterStoreError(f"Counter hook failed for {counter_id}") from exc


class SqlCounterStore:
    """Counters persisted in the ``counters`` table with an atomic upsert."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    @staticmethod
    def _upsert_statement(dialect_name: str, counter_id: str):
        insert = sqlite_insert if dialect_name == "sqlite" else postgresql_insert
        statement = insert(Counter).values(id=counter_id, value=1)
        return statement.on_conflict_do_update(
            index_elements=[Counter.id],
            set_={"value": Counter.value + 1, "updated_at": func.now()},
        )

    async def increment(self, counter_id: str) -> None:
        try:
            async with self._session_factory() as session:
                dialect_name = session.bind.dialect.name
                await session.execute(self._upsert_statement(dialect_name, counter_id))
                await session.commit()
        except SQLAlchemyError as exc:
            raise CounterStoreError(f"Counter store unavailable for {counter_id}") from exc

    async def get(self, counter_id: str) -> int | None:
        async with self._session_factory() as session:
            return await session.scalar(select(Counter.value).where(Counter.id == counter_id))

    async def list_counters(self) -> dict[str, int]:
        async with self._session_factory() as session:
            rows = await session.execute(select(Counter.id, Counter.value).order_by(Counter.id))
            return {counter_id: value for counter_id, value in rows.all()}
