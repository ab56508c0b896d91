"""Per-request orchestration of the visitor counters."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Iterable
from dataclasses import dataclass
from datetime import date, datetime, timezone, tzinfo
from enum import Enum
import logging
from typing import Callable, TypeVar
from zoneinfo import ZoneInfo

from visitor_counter.claims import CLAIM_TTL_SECONDS, ClaimStore
from visitor_counter.counter_ids import (
    IP_ADDRESSES,
    NEW_VISITORS,
    NEW_VISITORS_FROM_MOBILE,
    REQUESTS,
    SESSIONS,
    VISITORS,
    VISITORS_FROM_MOBILE,
    build_claim_key,
    build_counter_id,
)
from visitor_counter.counter_store import CounterHook, CounterStore, HookCounterStore, StoreIOError
from visitor_counter.device import is_mobile_device
from visitor_counter.ledger import DedupLedger, VisitorEvent
from visitor_counter.session import RequestSession, SessionFlags

logger = logging.getLogger("visitor_counter.increments")

T = TypeVar("T")


class ConfigurationError(ValueError):
    """Raised when the counter is built without exactly one counter sink."""


class IncrementOutcome(str, Enum):
    INCREMENTED = "incremented"
    SUPPRESSED = "suppressed"
    FAILED = "failed"


@dataclass(slots=True)
class RequestContext:
    """What the HTTP layer knows about one request."""

    ip: str
    hostname: str
    session: RequestSession | None = None
    user_agent: str | None = None
    timestamp: datetime | None = None


@dataclass(frozen=True, slots=True)
class PlannedIncrement:
    """One counter to increment, gated by every key in ``claim_keys``.

    ``depends_on`` names the kind whose claim must have been won first.
    """

    kind: str
    counter_id: str
    claim_keys: tuple[str, ...] = ()
    depends_on: str | None = None


@dataclass(frozen=True, slots=True)
class IncrementResult:
    counter_id: str
    outcome: IncrementOutcome
    error: Exception | None = None
    claimed: bool = True


def _utc_now() -> datetime:
    return datetime.now(tz=timezone.utc)


class VisitorCounter:
    """Decide which counters a request increments and emit them.

    Exactly one of ``store`` or ``hook`` must be given.  With a
    ``claim_store`` every deduplicated counter is additionally gated by
    atomic claims so that several processes can share one set of counters:
    ``visitors`` must win the day claims of both the IP and the session,
    ``new-visitors`` a lifetime claim of the session, and the mobile
    counters follow their parent.
    """

    def __init__(
        self,
        *,
        store: CounterStore | None = None,
        hook: CounterHook | None = None,
        prefix: str | None = None,
        without_date: bool = False,
        claim_store: ClaimStore | None = None,
        claim_ttl_seconds: int = CLAIM_TTL_SECONDS,
        ledger: DedupLedger | None = None,
        tz: str | tzinfo = "UTC",
        clock: Callable[[], datetime] = _utc_now,
        timeout_seconds: float | None = None,
        on_error: Callable[[str, Exception], None] | None = None,
    ) -> None:
        if store is None and hook is None:
            raise ConfigurationError("A counter store or a hook is required.")
        if store is not None and hook is not None:
            raise ConfigurationError("Configure either a counter store or a hook, not both.")
        self._store: CounterStore = store if store is not None else HookCounterStore(hook)
        self._prefix = prefix
        self._without_date = without_date
        self._claim_store = claim_store
        self._claim_ttl_seconds = claim_ttl_seconds
        self._ledger = ledger if ledger is not None else DedupLedger()
        self._tz = ZoneInfo(tz) if isinstance(tz, str) else tz
        self._clock = clock
        self._timeout_seconds = timeout_seconds
        self._on_error = on_error
        self._pending: set[asyncio.Task[list[IncrementResult]]] = set()

    @property
    def store(self) -> CounterStore:
        return self._store

    @property
    def claim_store(self) -> ClaimStore | None:
        return self._claim_store

    @property
    def ledger(self) -> DedupLedger:
        return self._ledger

    def today(self, at: datetime | None = None) -> date:
        """Calendar date of ``at`` (default now) in the configured timezone."""

        return (at or self._clock()).astimezone(self._tz).date()

    def _claim_keys(self, kind: str, day: date | None, *identities: str) -> tuple[str, ...]:
        if self._claim_store is None:
            return ()
        return tuple(build_claim_key(identity, kind, day) for identity in identities)

    def _planned(
        self,
        prefix: str,
        kind: str,
        counter_day: date | None,
        claim_keys: tuple[str, ...] = (),
        depends_on: str | None = None,
    ) -> PlannedIncrement:
        return PlannedIncrement(
            kind=kind,
            counter_id=build_counter_id(prefix, kind, counter_day),
            claim_keys=claim_keys,
            depends_on=depends_on,
        )

    def plan(self, context: RequestContext) -> list[PlannedIncrement]:
        """Run the dedup decisions for one request and list its increments.

        Synchronous so that decisions for one identity are taken in request
        order, independently of how fast the increments are stored.
        """

        timestamp = context.timestamp or self._clock()
        day = self.today(timestamp)
        counter_day = None if self._without_date else day
        prefix = self._prefix or context.hostname

        increments = [self._planned(prefix, REQUESTS, counter_day)]
        if context.session is None:
            return increments

        session = context.session
        flags = session.flags.read()
        is_mobile = is_mobile_device(context.user_agent)
        decision = self._ledger.evaluate(
            VisitorEvent(
                ip=context.ip,
                session_id=session.id,
                timestamp=timestamp,
                user_agent_is_mobile=is_mobile,
            ),
            flags,
            day,
        )
        session.flags.write(
            SessionFlags(
                not_first_request=True,
                last_visit_date=day if decision.session_established else flags.last_visit_date,
            )
        )

        # An established request consumes both the IP and the session for the
        # day. With shared claims the claim store takes the final decision, as
        # identities consumed on another instance are unknown to this ledger.
        claims_decide = self._claim_store is not None and decision.session_established
        if decision.confirmed_visit or claims_decide:
            new_visitor = decision.new_visitor or (
                claims_decide and flags.last_visit_date is None
            )
            increments.append(
                self._planned(
                    prefix,
                    VISITORS,
                    counter_day,
                    self._claim_keys(VISITORS, counter_day, context.ip, session.id),
                )
            )
            if new_visitor:
                increments.append(
                    self._planned(
                        prefix,
                        NEW_VISITORS,
                        counter_day,
                        self._claim_keys(NEW_VISITORS, None, session.id),
                        depends_on=VISITORS,
                    )
                )
            if is_mobile:
                increments.append(
                    self._planned(prefix, VISITORS_FROM_MOBILE, counter_day, depends_on=VISITORS)
                )
                if new_visitor:
                    increments.append(
                        self._planned(
                            prefix,
                            NEW_VISITORS_FROM_MOBILE,
                            counter_day,
                            depends_on=NEW_VISITORS,
                        )
                    )
        if decision.first_ip_today:
            increments.append(
                self._planned(
                    prefix,
                    IP_ADDRESSES,
                    counter_day,
                    self._claim_keys(IP_ADDRESSES, counter_day, context.ip),
                )
            )
        if decision.first_session_today:
            increments.append(
                self._planned(
                    prefix,
                    SESSIONS,
                    counter_day,
                    self._claim_keys(SESSIONS, counter_day, session.id),
                )
            )
        return increments

    async def _bounded(self, awaitable: Awaitable[T]) -> T:
        if self._timeout_seconds is None:
            return await awaitable
        return await asyncio.wait_for(awaitable, timeout=self._timeout_seconds)

    def _report(self, counter_id: str, exc: Exception) -> None:
        if self._on_error is None:
            return
        try:
            self._on_error(counter_id, exc)
        except Exception:
            logger.exception("increment_error_callback_failed counter_id=%s", counter_id)

    async def _claim(self, increment: PlannedIncrement) -> bool:
        """Attempt every claim key; the increment is won only if all of them are."""

        if not increment.claim_keys or self._claim_store is None:
            return True
        claim_store = self._claim_store
        outcomes = await asyncio.gather(
            *(
                self._bounded(claim_store.claim(key, self._claim_ttl_seconds))
                for key in increment.claim_keys
            ),
            return_exceptions=True,
        )
        for outcome in outcomes:
            if isinstance(outcome, BaseException):
                raise outcome
        return all(outcomes)

    async def _apply(self, increment: PlannedIncrement) -> IncrementResult:
        claimed = False
        try:
            claimed = await self._claim(increment)
            if not claimed:
                logger.debug(
                    "increment_suppressed counter_id=%s claim_keys=%s",
                    increment.counter_id,
                    ",".join(increment.claim_keys),
                )
                return IncrementResult(
                    increment.counter_id, IncrementOutcome.SUPPRESSED, claimed=False
                )
            await self._bounded(self._store.increment(increment.counter_id))
        except (StoreIOError, asyncio.TimeoutError) as exc:
            logger.warning(
                "increment_failed counter_id=%s error=%s",
                increment.counter_id,
                exc.__class__.__name__,
            )
            self._report(increment.counter_id, exc)
            return IncrementResult(
                increment.counter_id, IncrementOutcome.FAILED, exc, claimed=claimed
            )
        except Exception as exc:
            logger.exception("increment_failed counter_id=%s", increment.counter_id)
            self._report(increment.counter_id, exc)
            return IncrementResult(
                increment.counter_id, IncrementOutcome.FAILED, exc, claimed=claimed
            )
        return IncrementResult(increment.counter_id, IncrementOutcome.INCREMENTED)

    async def emit(self, increments: Iterable[PlannedIncrement]) -> list[IncrementResult]:
        """Apply increments concurrently; a failing one never aborts its siblings.

        An increment with ``depends_on`` runs after its parent and is
        suppressed unless the parent's claims were won.
        """

        increments = list(increments)
        results: list[IncrementResult | None] = [None] * len(increments)
        claimed_kinds: set[str] = set()
        remaining = list(range(len(increments)))
        while remaining:
            ready = [
                index
                for index in remaining
                if increments[index].depends_on is None
                or all(
                    increments[other].kind != increments[index].depends_on
                    or results[other] is not None
                    for other in remaining
                )
            ]
            runnable = []
            for index in ready:
                parent = increments[index].depends_on
                if parent is None or parent in claimed_kinds:
                    runnable.append(index)
                else:
                    results[index] = IncrementResult(
                        increments[index].counter_id, IncrementOutcome.SUPPRESSED, claimed=False
                    )
            applied = await asyncio.gather(*(self._apply(increments[index]) for index in runnable))
            for index, result in zip(runnable, applied):
                results[index] = result
                if result.claimed:
                    claimed_kinds.add(increments[index].kind)
            remaining = [index for index in remaining if index not in ready]
        return [result for result in results if result is not None]

    async def process(self, context: RequestContext) -> list[IncrementResult]:
        return await self.emit(self.plan(context))

    def dispatch(self, context: RequestContext) -> asyncio.Task[list[IncrementResult]]:
        """Plan now and store the increments in the background."""

        task = asyncio.create_task(self.emit(self.plan(context)))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def drain(self) -> None:
        """Wait for every background increment scheduled so far."""

        while self._pending:
            await asyncio.gather(*list(self._pending))
