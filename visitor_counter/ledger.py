"""In-process deduplication of per-day visitor events.

The ledger answers, for one request, which events are "first today":
the first request from an IP, the first request from a session, and the
confirmed visit of a returning session.  State is partitioned by calendar
date and guarded by striped re-entrant locks so that evaluations touching
distinct identities do not contend.
"""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import ExitStack, contextmanager
from dataclasses import dataclass, replace
from datetime import date, datetime, timedelta
import logging
from threading import Lock, RLock
from zlib import crc32

from visitor_counter.session import SessionFlags

logger = logging.getLogger("visitor_counter.ledger")

DEFAULT_RETAINED_DAYS = 2
DEFAULT_LOCK_STRIPES = 64


@dataclass(frozen=True, slots=True)
class VisitorEvent:
    """One inbound request reduced to what the ledger needs."""

    ip: str
    session_id: str | None
    timestamp: datetime
    user_agent_is_mobile: bool = False


@dataclass(slots=True)
class DailyState:
    """Per ``(identity, date)`` state shared by IP and session tables."""

    request_count: int = 0
    processed_today: bool = False


@dataclass(slots=True)
class SessionVisitRecord:
    """Lifetime record of a session's confirmed visits."""

    has_ever_been_confirmed_visitor: bool = False
    last_confirmed_visit_date: date | None = None


@dataclass(frozen=True, slots=True)
class LedgerDecision:
    """Events that are newly first for the evaluated request."""

    first_ip_today: bool
    first_session_today: bool
    confirmed_visit: bool
    new_visitor: bool
    session_established: bool


def session_is_established(flags: SessionFlags, day: date) -> bool:
    """A returning session that has not yet been confirmed on ``day``."""

    return flags.not_first_request and flags.last_visit_date != day


class _DailyTable:
    """Two-level map ``date -> identity -> DailyState``."""

    def __init__(self) -> None:
        self._partitions: dict[date, dict[str, DailyState]] = {}
        self._lock = Lock()

    def get(self, day: date, identity: str) -> DailyState | None:
        partition = self._partitions.get(day)
        if partition is None:
            return None
        return partition.get(identity)

    def get_or_create(self, day: date, identity: str) -> DailyState:
        partition = self._partitions.get(day)
        if partition is None:
            with self._lock:
                partition = self._partitions.setdefault(day, {})
        state = partition.get(identity)
        if state is None:
            state = partition.setdefault(identity, DailyState())
        return state

    def days(self) -> list[date]:
        with self._lock:
            return sorted(self._partitions)

    def evict_before(self, cutoff: date) -> int:
        with self._lock:
            stale_days = [day for day in self._partitions if day < cutoff]
            evicted = 0
            for day in stale_days:
                evicted += len(self._partitions.pop(day))
            return evicted

    def clear(self) -> None:
        with self._lock:
            self._partitions.clear()


class DedupLedger:
    """Process-local dedup tables for IPs, sessions and session lifetimes."""

    def __init__(
        self,
        *,
        retained_days: int = DEFAULT_RETAINED_DAYS,
        lock_stripes: int = DEFAULT_LOCK_STRIPES,
    ) -> None:
        if retained_days < 1:
            raise ValueError("retained_days must be >= 1")
        if lock_stripes < 1:
            raise ValueError("lock_stripes must be >= 1")
        self._retained_days = retained_days
        self._ips = _DailyTable()
        self._sessions = _DailyTable()
        self._visit_records: dict[str, SessionVisitRecord] = {}
        self._stripes = [RLock() for _ in range(lock_stripes)]
        self._newest_day: date | None = None
        self._newest_day_lock = Lock()

    @staticmethod
    def _ip_lock_key(ip: str) -> str:
        return f"ip:{ip}"

    @staticmethod
    def _session_lock_key(session_id: str) -> str:
        return f"session:{session_id}"

    @contextmanager
    def _locked(self, *lock_keys: str) -> Iterator[None]:
        # Fixed acquisition order keeps multi-key evaluations deadlock free.
        indices = sorted({crc32(key.encode("utf-8")) % len(self._stripes) for key in lock_keys})
        with ExitStack() as stack:
            for index in indices:
                stack.enter_context(self._stripes[index])
            yield

    def is_first_request_today_from_ip(self, ip: str, day: date) -> bool:
        with self._locked(self._ip_lock_key(ip)):
            return self._record_request(self._ips.get_or_create(day, ip))

    def is_first_request_today_from_session(self, session_id: str, day: date) -> bool:
        with self._locked(self._session_lock_key(session_id)):
            return self._record_request(self._sessions.get_or_create(day, session_id))

    @staticmethod
    def _record_request(state: DailyState) -> bool:
        first = state.request_count == 0
        state.request_count += 1
        return first

    def is_confirmed_visit_today(
        self,
        ip: str,
        session_id: str,
        day: date,
        session_is_established: bool,
    ) -> bool:
        """Decide whether this request confirms today's visit.

        Both the IP and the session are marked processed for ``day`` whenever
        the session is established, so concurrent requests racing to confirm
        under one IP (or one session) produce a single confirmation.
        """

        if not session_is_established:
            return False
        with self._locked(self._ip_lock_key(ip), self._session_lock_key(session_id)):
            ip_state = self._ips.get_or_create(day, ip)
            session_state = self._sessions.get_or_create(day, session_id)
            confirmed = not ip_state.processed_today and not session_state.processed_today
            ip_state.processed_today = True
            session_state.processed_today = True
            return confirmed

    def _record_confirmation(self, session_id: str, day: date) -> bool:
        """Update the lifetime record; True when it had never been confirmed."""

        record = self._visit_records.get(session_id)
        if record is None:
            record = self._visit_records.setdefault(session_id, SessionVisitRecord())
        first_ever = not record.has_ever_been_confirmed_visitor
        record.has_ever_been_confirmed_visitor = True
        record.last_confirmed_visit_date = day
        return first_ever

    def evaluate(self, event: VisitorEvent, flags: SessionFlags, day: date) -> LedgerDecision:
        """Run the confirmation protocol and record the request.

        Confirmation is evaluated before the request is counted so that an
        identity first seen on a confirming request is created already
        processed.
        """

        newest = self._observe_day(day)
        try:
            return self._evaluate(event, flags, day)
        finally:
            if day < self._cutoff(newest):
                # A skewed clock must not leave a stale partition behind.
                self.evict_stale(newest)

    def _observe_day(self, day: date) -> date:
        """Record ``day`` and return the newest day evaluated so far."""

        with self._newest_day_lock:
            if self._newest_day is not None and day <= self._newest_day:
                return self._newest_day
            self._newest_day = day
        self.evict_stale(day)
        return day

    def _cutoff(self, today: date) -> date:
        return today - timedelta(days=self._retained_days - 1)

    def _evaluate(self, event: VisitorEvent, flags: SessionFlags, day: date) -> LedgerDecision:
        if event.session_id is None:
            first_ip = self.is_first_request_today_from_ip(event.ip, day)
            return LedgerDecision(
                first_ip_today=first_ip,
                first_session_today=False,
                confirmed_visit=False,
                new_visitor=False,
                session_established=False,
            )

        established = session_is_established(flags, day)
        with self._locked(self._ip_lock_key(event.ip), self._session_lock_key(event.session_id)):
            confirmed = self.is_confirmed_visit_today(
                event.ip, event.session_id, day, established
            )
            new_visitor = False
            if established:
                first_ever = self._record_confirmation(event.session_id, day)
                new_visitor = confirmed and first_ever and flags.last_visit_date is None
            first_ip = self.is_first_request_today_from_ip(event.ip, day)
            first_session = self.is_first_request_today_from_session(event.session_id, day)

        return LedgerDecision(
            first_ip_today=first_ip,
            first_session_today=first_session,
            confirmed_visit=confirmed,
            new_visitor=new_visitor,
            session_established=established,
        )

    def evict_stale(self, today: date) -> int:
        """Drop daily partitions outside the retention window ending ``today``."""

        cutoff = self._cutoff(today)
        evicted = self._ips.evict_before(cutoff) + self._sessions.evict_before(cutoff)
        if evicted:
            logger.debug("ledger_evicted cutoff=%s entries=%s", cutoff.isoformat(), evicted)
        return evicted

    def ip_state(self, ip: str, day: date) -> DailyState | None:
        with self._locked(self._ip_lock_key(ip)):
            state = self._ips.get(day, ip)
            return replace(state) if state is not None else None

    def session_state(self, session_id: str, day: date) -> DailyState | None:
        with self._locked(self._session_lock_key(session_id)):
            state = self._sessions.get(day, session_id)
            return replace(state) if state is not None else None

    def visit_record(self, session_id: str) -> SessionVisitRecord | None:
        with self._locked(self._session_lock_key(session_id)):
            record = self._visit_records.get(session_id)
            return replace(record) if record is not None else None

    def tracked_days(self) -> list[date]:
        return sorted(set(self._ips.days()) | set(self._sessions.days()))

    def clear(self) -> None:
        self._ips.clear()
        self._sessions.clear()
        self._visit_records.clear()
        with self._newest_day_lock:
            self._newest_day = None
