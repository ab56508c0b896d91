"""FastAPI/Starlette glue feeding requests to a ``VisitorCounter``."""

from __future__ import annotations

from secrets import token_urlsafe
from typing import Any

from fastapi import FastAPI, Request, Response

from visitor_counter.counter import RequestContext, VisitorCounter
from visitor_counter.session import MappingSessionFlags, RequestSession

SESSION_ID_KEY = "visitor_session_id"


def client_ip(request: Request, *, trust_forwarded_for: bool = False) -> str:
    if trust_forwarded_for:
        forwarded_for = request.headers.get("x-forwarded-for")
        if forwarded_for:
            first_hop = forwarded_for.split(",", 1)[0].strip()
            if first_hop:
                return first_hop
    if request.client is not None and request.client.host:
        return request.client.host
    return "unknown"


def request_session(request: Request) -> RequestSession | None:
    """Session capability of the request; None when no session middleware ran."""

    if "session" not in request.scope:
        return None
    data = request.session
    session_id = data.get(SESSION_ID_KEY)
    if not session_id:
        session_id = token_urlsafe(16)
        data[SESSION_ID_KEY] = session_id
    return RequestSession(id=str(session_id), flags=MappingSessionFlags(data))


def build_request_context(request: Request, *, trust_forwarded_for: bool = False) -> RequestContext:
    return RequestContext(
        ip=client_ip(request, trust_forwarded_for=trust_forwarded_for),
        hostname=request.url.hostname or "localhost",
        session=request_session(request),
        user_agent=request.headers.get("user-agent"),
    )


def install_visitor_counter(
    app: FastAPI,
    counter: VisitorCounter,
    *,
    trust_forwarded_for: bool = False,
    wait_for_increments: bool = False,
) -> None:
    """Register the counting middleware on ``app``.

    Call before adding ``SessionMiddleware`` so that the session middleware
    wraps this one and ``request.session`` is populated.
    """

    @app.middleware("http")
    async def visitor_counter_middleware(request: Request, call_next: Any) -> Response:
        context = build_request_context(request, trust_forwarded_for=trust_forwarded_for)
        if wait_for_increments:
            await counter.process(context)
        else:
            counter.dispatch(context)
        return await call_next(request)
