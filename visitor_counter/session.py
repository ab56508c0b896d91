"""Sticky per-session flags read and written by the visitor counter."""

from __future__ import annotations

from collections.abc import MutableMapping
from dataclasses import dataclass
from datetime import date, datetime
from typing import Any, Protocol

from visitor_counter.counter_ids import COUNTER_DATE_FORMAT, format_counter_date

NOT_FIRST_REQUEST_KEY = "not_first_request"
LAST_VISIT_DATE_KEY = "last_visit_date"


@dataclass(slots=True)
class SessionFlags:
    """Flags carried by a client session between requests."""

    not_first_request: bool = False
    last_visit_date: date | None = None


class SessionFlagsAccessor(Protocol):
    """Capability over wherever the session keeps its flags."""

    def read(self) -> SessionFlags:
        """Return the flags as they were when the request started."""

    def write(self, flags: SessionFlags) -> None:
        """Persist flags for subsequent requests of the same session."""


class MappingSessionFlags:
    """Flags stored in a mutable session mapping (cookie or server side)."""

    def __init__(self, data: MutableMapping[str, Any]) -> None:
        self._data = data

    def read(self) -> SessionFlags:
        raw_date = self._data.get(LAST_VISIT_DATE_KEY)
        last_visit_date = None
        if raw_date:
            try:
                last_visit_date = datetime.strptime(str(raw_date), COUNTER_DATE_FORMAT).date()
            except ValueError:
                last_visit_date = None
        return SessionFlags(
            not_first_request=bool(self._data.get(NOT_FIRST_REQUEST_KEY, False)),
            last_visit_date=last_visit_date,
        )

    def write(self, flags: SessionFlags) -> None:
        self._data[NOT_FIRST_REQUEST_KEY] = flags.not_first_request
        if flags.last_visit_date is None:
            self._data.pop(LAST_VISIT_DATE_KEY, None)
        else:
            self._data[LAST_VISIT_DATE_KEY] = format_counter_date(flags.last_visit_date)


@dataclass(slots=True)
class RequestSession:
    """Session as seen by one request: an opaque id plus its flags."""

    id: str
    flags: SessionFlagsAccessor
