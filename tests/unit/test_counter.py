from __future__ import annotations

import asyncio
from collections import Counter
from datetime import datetime, timedelta, timezone
from itertools import count

import pytest

from visitor_counter.claims import InMemoryClaimStore
from visitor_counter.counter import (
    ConfigurationError,
    IncrementOutcome,
    RequestContext,
    VisitorCounter,
)
from visitor_counter.counter_ids import build_counter_id
from visitor_counter.counter_store import CounterStoreError, InMemoryCounterStore
from visitor_counter.session import MappingSessionFlags, RequestSession

HOST = "example.com"
IPHONE = "Mozilla/5.0 (iPhone; CPU iPhone OS 17_0 like Mac OS X) Mobile/15E148 Safari/604.1"
_session_ids = count(1)


class ManualClock:
    def __init__(self) -> None:
        self.now = datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


class Browser:
    """A client whose cookie jar keeps the last session it was given."""

    def __init__(self, ip: str = "50.50.50.0", user_agent: str | None = None) -> None:
        self.ip = ip
        self.user_agent = user_agent
        self._cookie: tuple[str, dict] | None = None
        self._sent: list[tuple[RequestContext, dict]] = []

    def request(self, ip: str | None = None) -> RequestContext:
        if self._cookie is None:
            session_id, data = f"session-{next(_session_ids)}", {}
        else:
            session_id, data = self._cookie[0], dict(self._cookie[1])
        context = RequestContext(
            ip=ip or self.ip,
            hostname=HOST,
            session=RequestSession(id=session_id, flags=MappingSessionFlags(data)),
            user_agent=self.user_agent,
        )
        self._sent.append((context, data))
        return context

    def accept(self, context: RequestContext) -> None:
        data = next(data for sent, data in self._sent if sent is context)
        self._cookie = (context.session.id, data)
        self._sent.clear()

    @property
    def session_id(self) -> str | None:
        return self._cookie[0] if self._cookie is not None else None

    def forget(self) -> None:
        self._cookie = None


async def wave(counter: VisitorCounter, browser: Browser, *ips: str) -> None:
    """Requests sent together: all leave with the same cookie jar state."""

    contexts = [browser.request(ip) for ip in ips]
    for context in contexts:
        await counter.process(context)
    browser.accept(contexts[-1])


async def spread_wave(
    instances: list[VisitorCounter], browser: Browser, *ips: str, start: int = 0
) -> None:
    """A wave whose requests are load balanced round robin across instances."""

    contexts = [browser.request(ip) for ip in ips]
    for offset, context in enumerate(contexts):
        await instances[(start + offset) % len(instances)].process(context)
    browser.accept(contexts[-1])


class Tally:
    def __init__(self, clock: ManualClock) -> None:
        self.values: Counter[str] = Counter()
        self.clock = clock

    def __call__(self, counter_id: str) -> None:
        self.values[counter_id] += 1

    def __getitem__(self, kind: str) -> int:
        return self.values[build_counter_id(HOST, kind, self.clock().date())]


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def tally(clock: ManualClock) -> Tally:
    return Tally(clock)


@pytest.fixture
def counter(tally: Tally, clock: ManualClock) -> VisitorCounter:
    return VisitorCounter(hook=tally, clock=clock)


def test_requires_exactly_one_counter_sink() -> None:
    with pytest.raises(ConfigurationError):
        VisitorCounter()
    with pytest.raises(ConfigurationError):
        VisitorCounter(store=InMemoryCounterStore(), hook=lambda _counter_id: None)


async def test_without_session_only_requests_are_counted(counter, tally) -> None:
    for _ in range(5):
        await counter.process(RequestContext(ip="50.50.50.0", hostname=HOST))

    assert tally["requests"] == 5
    assert sum(tally.values.values()) == 5
    assert counter.ledger.tracked_days() == []


async def test_distinct_ips_fresh_then_established_sessions(counter, tally) -> None:
    browsers = [Browser(ip) for ip in ("A", "B", "C")]

    for browser in browsers:
        await wave(counter, browser, browser.ip)
    assert (tally["requests"], tally["ip-addresses"], tally["sessions"]) == (3, 3, 3)
    assert tally["visitors"] == 0

    for browser in browsers:
        await wave(counter, browser, browser.ip)
    assert tally["requests"] == 6
    assert tally["ip-addresses"] == 3
    assert tally["sessions"] == 3
    assert tally["visitors"] == 3
    assert tally["new-visitors"] == 3


async def test_waves_of_one_browser_across_days(counter, tally, clock) -> None:
    browser = Browser()

    await wave(counter, browser, "50.50.50.0", "50.50.50.1", "50.50.50.2")
    assert (tally["requests"], tally["visitors"], tally["new-visitors"]) == (3, 0, 0)
    assert tally["ip-addresses"] == 3

    await wave(counter, browser, "50.50.50.0", "50.50.50.0", "50.50.50.0")
    assert (tally["requests"], tally["visitors"], tally["new-visitors"]) == (6, 1, 1)
    assert tally["ip-addresses"] == 3

    await wave(counter, browser, "50.50.50.0", "50.50.50.0", "50.50.50.0")
    assert (tally["requests"], tally["visitors"], tally["new-visitors"]) == (9, 1, 1)

    browser.forget()
    await wave(counter, browser, "50.50.50.0")
    await wave(counter, browser, "50.50.50.0")
    await wave(counter, browser, "50.50.50.3")
    assert (tally["requests"], tally["visitors"], tally["new-visitors"]) == (12, 1, 1)
    assert tally["ip-addresses"] == 4

    clock.advance(days=1)
    await wave(counter, browser, "50.50.50.0")
    await wave(counter, browser, "50.50.50.0")
    assert tally["requests"] == 2
    assert tally["visitors"] == 1
    assert tally["new-visitors"] == 0
    assert tally["ip-addresses"] == 1
    assert tally["sessions"] == 1


async def test_mobile_visit_counts_both_counters(counter, tally) -> None:
    browser = Browser(user_agent=IPHONE)
    await wave(counter, browser, "50.50.50.0")
    assert tally["visitors-from-mobile"] == 0

    await wave(counter, browser, "50.50.50.0")
    assert tally["visitors"] == 1
    assert tally["visitors-from-mobile"] == 1
    assert tally["new-visitors"] == 1
    assert tally["new-visitors-from-mobile"] == 1


async def test_session_flags_are_written_back(counter, clock) -> None:
    browser = Browser()
    first = browser.request()
    await counter.process(first)
    assert first.session.flags.read().not_first_request is True
    assert first.session.flags.read().last_visit_date is None

    browser.accept(first)
    second = browser.request()
    await counter.process(second)
    assert second.session.flags.read().last_visit_date == clock().date()


async def test_prefix_and_without_date_shape_counter_ids(clock) -> None:
    store = InMemoryCounterStore()
    counter = VisitorCounter(store=store, prefix="site", without_date=True, clock=clock)
    await counter.process(RequestContext(ip="1.2.3.4", hostname=HOST))
    assert await store.list_counters() == {"site-requests": 1}


async def test_timezone_policy_decides_the_calendar_date() -> None:
    store = InMemoryCounterStore()
    late_utc = datetime(2026, 10, 19, 23, 30, tzinfo=timezone.utc)
    counter = VisitorCounter(store=store, tz="Asia/Tokyo", clock=lambda: late_utc)
    await counter.process(RequestContext(ip="1.2.3.4", hostname=HOST))
    assert await store.list_counters() == {f"{HOST}-requests-20-10-2026": 1}


async def test_failed_increment_does_not_abort_siblings_or_roll_back(clock) -> None:
    stored: list[str] = []
    errors: list[tuple[str, Exception]] = []

    def flaky(counter_id: str) -> None:
        if counter_id == build_counter_id(HOST, "visitors", clock().date()):
            raise ConnectionError("store down")
        stored.append(counter_id)

    counter = VisitorCounter(
        hook=flaky,
        clock=clock,
        on_error=lambda counter_id, exc: errors.append((counter_id, exc)),
    )
    browser = Browser()
    await wave(counter, browser, "50.50.50.0")

    context = browser.request()
    results = await counter.process(context)
    outcomes = {result.counter_id: result.outcome for result in results}
    visitors_id = build_counter_id(HOST, "visitors", clock().date())
    assert outcomes[visitors_id] is IncrementOutcome.FAILED
    assert outcomes[build_counter_id(HOST, "new-visitors", clock().date())] is IncrementOutcome.INCREMENTED
    assert outcomes[build_counter_id(HOST, "requests", clock().date())] is IncrementOutcome.INCREMENTED
    assert len(errors) == 1 and errors[0][0] == visitors_id
    assert isinstance(errors[0][1], CounterStoreError)

    # The in-memory decision stands: no second chance to count the visit.
    browser.accept(context)
    retry = await counter.process(browser.request())
    assert [result.counter_id for result in retry] == [build_counter_id(HOST, "requests", clock().date())]


async def test_slow_store_times_out(clock) -> None:
    class SlowStore:
        async def increment(self, counter_id: str) -> None:
            await asyncio.sleep(1)

    counter = VisitorCounter(store=SlowStore(), clock=clock, timeout_seconds=0.01)
    [result] = await counter.process(RequestContext(ip="1.2.3.4", hostname=HOST))
    assert result.outcome is IncrementOutcome.FAILED
    assert isinstance(result.error, asyncio.TimeoutError)


async def test_dispatch_runs_in_background_and_drain_waits(counter, tally) -> None:
    browser = Browser()
    for _ in range(3):
        context = browser.request()
        counter.dispatch(context)
        browser.accept(context)

    # Decisions are taken at dispatch time, storage happens later.
    assert tally["requests"] == 0
    assert counter.ledger.visit_record(context.session.id) is not None

    await counter.drain()
    assert tally["requests"] == 3
    assert tally["sessions"] == 1
    assert tally["visitors"] == 1


async def test_requests_counter_bypasses_claims(clock) -> None:
    claims = InMemoryClaimStore()
    store = InMemoryCounterStore()
    counter = VisitorCounter(store=store, claim_store=claims, clock=clock)
    browser = Browser()

    await wave(counter, browser, "50.50.50.0")
    await wave(counter, browser, "50.50.50.0")

    day = clock().strftime("%d-%m-%Y")
    assert f"50.50.50.0-ip-address-{day}" in claims
    assert f"50.50.50.0-visitor-{day}" in claims
    assert f"{browser.session_id}-visitor-{day}" in claims
    assert f"{browser.session_id}-new-visitor" in claims
    assert f"50.50.50.0-new-visitor-{day}" not in claims
    assert f"50.50.50.0-requests-{day}" not in claims
    assert f"{browser.session_id}-requests-{day}" not in claims
    assert (await store.list_counters())[f"{HOST}-requests-{day}"] == 2


async def test_lost_claim_suppresses_increment(clock) -> None:
    claims = InMemoryClaimStore()
    day = clock().strftime("%d-%m-%Y")
    await claims.claim(f"50.50.50.0-ip-address-{day}", 60)

    counter = VisitorCounter(hook=lambda _counter_id: None, claim_store=claims, clock=clock)
    results = await counter.process(Browser().request())
    outcomes = {result.counter_id: result.outcome for result in results}
    assert outcomes[f"{HOST}-ip-addresses-{day}"] is IncrementOutcome.SUPPRESSED
    assert outcomes[f"{HOST}-sessions-{day}"] is IncrementOutcome.INCREMENTED


async def test_claim_store_failure_skips_only_that_increment(clock) -> None:
    class BrokenClaims:
        async def claim(self, key: str, ttl_seconds: int) -> bool:
            raise ConnectionResetError("redis gone")

    store = InMemoryCounterStore()
    counter = VisitorCounter(store=store, claim_store=BrokenClaims(), clock=clock)
    results = await counter.process(Browser().request())
    assert {result.outcome for result in results} == {
        IncrementOutcome.INCREMENTED,
        IncrementOutcome.FAILED,
    }
    assert list(await store.list_counters()) == [f"{HOST}-requests-{clock().strftime('%d-%m-%Y')}"]


async def _replay(instances: list[VisitorCounter], clock: ManualClock) -> None:
    first, second = Browser(), Browser()
    by_browser = [(first, instances[0]), (second, instances[-1])]

    for browser, counter in by_browser:
        await wave(counter, browser, "50.50.50.0", "50.50.50.1", "50.50.50.2")
    for browser, counter in by_browser:
        await wave(counter, browser, "50.50.50.0", "50.50.50.1", "50.50.50.2")
    for browser, counter in by_browser:
        await wave(counter, browser, "50.50.50.0", "50.50.50.0", "50.50.50.0")

    first.forget()
    second.forget()
    for browser, counter in by_browser:
        await wave(counter, browser, "50.50.50.0")
        await wave(counter, browser, "50.50.50.0")
        await wave(counter, browser, "50.50.50.3")

    clock.advance(days=1)
    for browser, counter in by_browser:
        await wave(counter, browser, "50.50.50.0")
        await wave(counter, browser, "50.50.50.0")


async def test_instances_sharing_claims_count_like_a_single_instance() -> None:
    single_clock = ManualClock()
    single_store = InMemoryCounterStore()
    await _replay([VisitorCounter(store=single_store, clock=single_clock)], single_clock)

    shared_clock = ManualClock()
    shared_store = InMemoryCounterStore()
    claims = InMemoryClaimStore()
    instances = [
        VisitorCounter(store=shared_store, claim_store=claims, clock=shared_clock)
        for _ in range(2)
    ]
    await _replay(instances, shared_clock)

    assert await shared_store.list_counters() == await single_store.list_counters()
    day_one = f"{HOST}-visitors-19-10-2026"
    assert (await shared_store.list_counters())[day_one] == 1


async def test_instances_without_claims_double_count() -> None:
    clock = ManualClock()
    store = InMemoryCounterStore()
    instances = [VisitorCounter(store=store, clock=clock) for _ in range(2)]
    await _replay(instances, clock)
    assert (await store.list_counters())[f"{HOST}-ip-addresses-19-10-2026"] > 3


def _shared_instances(clock: ManualClock) -> tuple[list[VisitorCounter], InMemoryCounterStore]:
    store = InMemoryCounterStore()
    claims = InMemoryClaimStore()
    instances = [VisitorCounter(store=store, claim_store=claims, clock=clock) for _ in range(2)]
    return instances, store


async def test_session_confirming_from_two_ips_on_two_instances_counts_once() -> None:
    single_clock = ManualClock()
    single_store = InMemoryCounterStore()
    single = VisitorCounter(store=single_store, clock=single_clock)
    browser = Browser()
    await wave(single, browser, "A")
    await wave(single, browser, "A", "C")

    shared_clock = ManualClock()
    instances, shared_store = _shared_instances(shared_clock)
    browser = Browser()
    await spread_wave(instances, browser, "A")
    # Same cookie state, first request on one instance, second on the other.
    await spread_wave(instances, browser, "A", "C")

    counters = await shared_store.list_counters()
    assert counters[f"{HOST}-visitors-19-10-2026"] == 1
    assert counters[f"{HOST}-new-visitors-19-10-2026"] == 1
    assert counters == await single_store.list_counters()


async def _spread_replay(instances: list[VisitorCounter], clock: ManualClock) -> None:
    first, second, phone = Browser(), Browser(), Browser("B", user_agent=IPHONE)

    await spread_wave(instances, first, "A")
    await spread_wave(instances, second, "A", start=1)
    await spread_wave(instances, phone, "B", start=1)

    # One session's wave split across instances from different IPs, from
    # the same IP, and for a mobile browser.
    await spread_wave(instances, first, "A", "C")
    await spread_wave(instances, second, "A", "A")
    await spread_wave(instances, phone, "D", "B")

    clock.advance(days=1)
    await spread_wave(instances, first, "C", "A", start=1)
    await spread_wave(instances, second, "A", "A")


async def test_sessions_spread_across_instances_count_like_a_single_instance() -> None:
    single_clock = ManualClock()
    single_store = InMemoryCounterStore()
    await _spread_replay([VisitorCounter(store=single_store, clock=single_clock)], single_clock)

    shared_clock = ManualClock()
    instances, shared_store = _shared_instances(shared_clock)
    await _spread_replay(instances, shared_clock)

    counters = await shared_store.list_counters()
    assert counters == await single_store.list_counters()
    assert counters[f"{HOST}-visitors-19-10-2026"] == 2
    assert counters[f"{HOST}-new-visitors-19-10-2026"] == 2
    assert counters[f"{HOST}-visitors-from-mobile-19-10-2026"] == 1
    assert counters[f"{HOST}-new-visitors-from-mobile-19-10-2026"] == 1
    assert counters[f"{HOST}-ip-addresses-19-10-2026"] == 4
    assert counters[f"{HOST}-visitors-20-10-2026"] == 1
    assert f"{HOST}-new-visitors-20-10-2026" not in counters
