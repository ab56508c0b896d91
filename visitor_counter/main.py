"""FastAPI entrypoint for the visitor counter service."""

from __future__ import annotations

from datetime import datetime, timezone
import logging
from time import monotonic
from typing import Any

from fastapi import FastAPI, HTTPException, Request, Response, status
from pydantic import BaseModel
from starlette.middleware.sessions import SessionMiddleware

from visitor_counter.claims import create_claim_store
from visitor_counter.config import Settings, get_settings
from visitor_counter.counter import VisitorCounter
from visitor_counter.counter_store import InMemoryCounterStore, SqlCounterStore
from visitor_counter.ledger import DedupLedger
from visitor_counter.middleware import install_visitor_counter

settings = get_settings()
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)
claims_logger = logging.getLogger("visitor_counter.claims")
request_logger = logging.getLogger("visitor_counter.request")


class CounterValue(BaseModel):
    id: str
    value: int


def build_counter_store(config: Settings) -> InMemoryCounterStore | SqlCounterStore:
    backend = config.counter_backend.strip().lower()
    if backend == "memory":
        return InMemoryCounterStore()
    if backend == "database":
        from visitor_counter.database import AsyncSessionLocal

        return SqlCounterStore(AsyncSessionLocal)
    raise ValueError(f"Unsupported COUNTER_BACKEND value: {config.counter_backend}")


def build_visitor_counter(config: Settings) -> VisitorCounter:
    claim_store, claims_are_shared = create_claim_store(
        backend=config.claim_backend,
        redis_url=config.redis_url,
        prefix=config.claim_prefix,
        logger=claims_logger,
    )
    if (
        config.require_shared_claims
        and config.environment.lower() not in {"development", "test"}
        and not claims_are_shared
    ):
        raise RuntimeError(
            "Shared claims are required when several instances count together. "
            "Configure REDIS_URL or CLAIM_BACKEND=redis."
        )
    return VisitorCounter(
        store=build_counter_store(config),
        prefix=config.counter_prefix,
        without_date=config.counter_without_date,
        claim_store=claim_store,
        claim_ttl_seconds=config.claim_ttl_seconds,
        ledger=DedupLedger(retained_days=config.retained_days),
        tz=config.counter_timezone,
        timeout_seconds=config.store_timeout_seconds,
    )


def create_app(config: Settings | None = None, *, counter: VisitorCounter | None = None) -> FastAPI:
    config = config or settings
    visitor_counter = counter or build_visitor_counter(config)
    started_at_monotonic = monotonic()

    app = FastAPI(title=config.app_name, version=config.app_version)
    app.state.visitor_counter = visitor_counter

    install_visitor_counter(
        app,
        visitor_counter,
        trust_forwarded_for=config.trust_forwarded_for,
        wait_for_increments=config.wait_for_increments,
    )

    @app.middleware("http")
    async def request_logging_middleware(request: Request, call_next: Any) -> Response:
        started = monotonic()
        path = request.url.path
        method = request.method.upper()
        try:
            response = await call_next(request)
        except Exception:
            latency_ms = int((monotonic() - started) * 1000)
            request_logger.exception(
                "request method=%s path=%s status=%s latency_ms=%s",
                method,
                path,
                500,
                latency_ms,
            )
            raise

        latency_ms = int((monotonic() - started) * 1000)
        request_logger.info(
            "request method=%s path=%s status=%s latency_ms=%s",
            method,
            path,
            response.status_code,
            latency_ms,
        )
        return response

    # Added last so it wraps the counting middleware and populates request.session.
    app.add_middleware(
        SessionMiddleware,
        secret_key=config.session_secret,
        session_cookie=config.session_cookie,
        max_age=config.session_max_age_seconds,
    )

    @app.on_event("shutdown")
    async def shutdown_event() -> None:
        await visitor_counter.drain()
        if visitor_counter.claim_store is not None:
            await visitor_counter.claim_store.close()
        if isinstance(visitor_counter.store, SqlCounterStore):
            from visitor_counter.database import close_engine

            await close_engine()

    @app.get("/counters", tags=["counters"])
    async def list_counters() -> list[CounterValue]:
        values = await visitor_counter.store.list_counters()
        return [CounterValue(id=counter_id, value=value) for counter_id, value in values.items()]

    @app.get("/counters/{counter_id}", tags=["counters"])
    async def get_counter(counter_id: str) -> CounterValue:
        value = await visitor_counter.store.get(counter_id)
        if value is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Counter not found")
        return CounterValue(id=counter_id, value=value)

    @app.get("/healthz", tags=["health"])
    async def basic_health() -> dict[str, int | str]:
        store_status = "ok"
        try:
            await visitor_counter.store.get("healthz")
        except Exception:
            store_status = "unavailable"
        claim_status = "disabled"
        claim_store = visitor_counter.claim_store
        if claim_store is not None:
            ping = getattr(claim_store, "ping", None)
            claim_status = "ok" if ping is None or await ping() else "unavailable"
        healthy = store_status == "ok" and claim_status != "unavailable"
        return {
            "status": "healthy" if healthy else "unhealthy",
            "version": config.app_version,
            "counter_store": store_status,
            "claim_store": claim_status,
            "checked_at": datetime.now(tz=timezone.utc).isoformat(),
            "uptime_seconds": int(monotonic() - started_at_monotonic),
        }

    return app


app = create_app()
