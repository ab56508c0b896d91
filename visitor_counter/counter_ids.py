"""Counter and claim identifiers."""

from __future__ import annotations

from datetime import date

COUNTER_DATE_FORMAT = "%d-%m-%Y"

REQUESTS = "requests"
VISITORS = "visitors"
NEW_VISITORS = "new-visitors"
VISITORS_FROM_MOBILE = "visitors-from-mobile"
NEW_VISITORS_FROM_MOBILE = "new-visitors-from-mobile"
IP_ADDRESSES = "ip-addresses"
SESSIONS = "sessions"

COUNTER_KINDS = (
    REQUESTS,
    VISITORS,
    NEW_VISITORS,
    VISITORS_FROM_MOBILE,
    NEW_VISITORS_FROM_MOBILE,
    IP_ADDRESSES,
    SESSIONS,
)

# Claim kinds used to deduplicate counters across processes. The mobile
# counters have none: they follow the claim of their parent counter.
CLAIM_KINDS: dict[str, str] = {
    VISITORS: "visitor",
    NEW_VISITORS: "new-visitor",
    IP_ADDRESSES: "ip-address",
    SESSIONS: "session",
}


def format_counter_date(day: date) -> str:
    return day.strftime(COUNTER_DATE_FORMAT)


def build_counter_id(prefix: str, kind: str, day: date | None = None) -> str:
    """Return ``{prefix}-{kind}[-{dd-mm-yyyy}]``."""

    if day is None:
        return f"{prefix}-{kind}"
    return f"{prefix}-{kind}-{format_counter_date(day)}"


def build_claim_key(identity: str, kind: str, day: date | None = None) -> str:
    """Claim key for a counter kind; day-scoped when ``day`` is given."""

    return build_counter_id(identity, CLAIM_KINDS[kind], day)
