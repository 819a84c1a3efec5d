"""
Ticket cache — single-flight acquisition, persistence and expiry of WSAA tickets.

Application layer — depends only on ports (TicketServiceClient, TicketStore,
TicketListener), never on concrete adapters.

Lookup order for get_valid(service_id):
  1. memory      → unexpired ticket, no I/O, no lock
  2. store       → unexpired persisted ticket, adopted into memory
  3. refresh     → WSAA login under the refresh lock

Refresh protocol:
  - one global asyncio.Lock; memory is re-checked after acquiring it, so
    concurrent callers for the same service trigger a single login
  - WSAA "already authenticated" fault → wait the backoff, re-read the
    store and adopt a valid ticket, otherwise log in once more (tenacity);
    this is the only automatic retry in the core
  - the new ticket replaces the old instance in memory and is persisted;
    a persistence failure is logged at error level and the ticket is
    still returned

Every transition is logged via structlog and reported to TicketListener
observers. A failing listener is logged and ignored.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Sequence
from datetime import UTC, datetime
from typing import Any

import structlog
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    wait_fixed,
)

from afip_invoicer.domain.errors import AfipError, RemoteFaultError, StorageError
from afip_invoicer.domain.models import SecurityTicket
from afip_invoicer.domain.ports import TicketListener, TicketServiceClient, TicketStore
from afip_invoicer.scheduler import create_sweep_scheduler

log = structlog.get_logger()

DEFAULT_BACKOFF_SECONDS = 30.0
DEFAULT_SWEEP_MINUTES = 5


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _is_already_authenticated(error: BaseException) -> bool:
    return isinstance(error, RemoteFaultError) and error.is_already_authenticated


class TicketCache:
    """
    In-memory map of service id → SecurityTicket, backed by a TicketStore.

    Tickets are immutable, so readers never lock; only refresh and the
    sweep replace entries.
    """

    def __init__(
        self,
        client: TicketServiceClient,
        store: TicketStore,
        *,
        listeners: Sequence[TicketListener] = (),
        already_authenticated_backoff: float = DEFAULT_BACKOFF_SECONDS,
        sweep_interval_minutes: int = DEFAULT_SWEEP_MINUTES,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._client = client
        self._store = store
        self._listeners = tuple(listeners)
        self._backoff = already_authenticated_backoff
        self._sweep_interval_minutes = sweep_interval_minutes
        self._clock = clock
        self._tickets: dict[str, SecurityTicket] = {}
        self._lock = asyncio.Lock()
        self._scheduler: AsyncIOScheduler | None = None

    # ─────────────────────── lookups ───────────────────────

    def current(self, service_id: str) -> SecurityTicket | None:
        """The in-memory ticket for `service_id` if it has not expired."""
        ticket = self._tickets.get(service_id)
        if ticket is None or ticket.is_expired(self._clock()):
            return None
        return ticket

    def has_valid(self, service_id: str) -> bool:
        return self.current(service_id) is not None

    async def get_valid(self, service_id: str) -> SecurityTicket:
        """Return a ticket valid now, from memory, the store or a fresh login."""
        ticket = self.current(service_id)
        if ticket is not None:
            log.debug("ticket.cache_hit", service_id=service_id)
            return ticket

        stored = await self._store.get_valid(service_id)
        if stored is not None and not stored.is_expired(self._clock()):
            self._tickets[service_id] = stored
            log.info(
                "ticket.restored",
                service_id=service_id,
                expires_at=stored.expires_at.isoformat(),
            )
            return stored

        return await self.refresh(service_id)

    # ─────────────────────── refresh ───────────────────────

    async def refresh(self, service_id: str, *, force: bool = False) -> SecurityTicket:
        """
        Obtain a new ticket from WSAA and make it current.

        Unless `force` is set, a valid ticket that appeared while waiting for
        the lock (another caller's refresh) is returned instead of logging
        in again.
        """
        async with self._lock:
            if not force:
                ticket = self.current(service_id)
                if ticket is not None:
                    log.debug("ticket.refreshed_concurrently", service_id=service_id)
                    return ticket

            log.info("ticket.refresh_started", service_id=service_id, forced=force)
            try:
                ticket = await self._login_with_recovery(service_id)
            except AfipError as e:
                log.error(
                    "ticket.refresh_failed",
                    service_id=service_id,
                    error_code=e.code.value,
                    error=e.message,
                )
                self._notify("on_ticket_error", service_id, e)
                raise

            self._tickets[service_id] = ticket
            await self._persist(ticket)

        log.info(
            "ticket.obtained",
            service_id=service_id,
            expires_at=ticket.expires_at.isoformat(),
            token_length=len(ticket.token),
            sign_length=len(ticket.sign),
        )
        self._notify("on_ticket_obtained", ticket)
        return ticket

    async def _login_with_recovery(self, service_id: str) -> SecurityTicket:
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(2),
            wait=wait_fixed(self._backoff),
            retry=retry_if_exception(_is_already_authenticated),
            before_sleep=self._log_already_authenticated(service_id),
            reraise=True,
        ):
            with attempt:
                return await self._attempt_login(service_id, attempt.retry_state.attempt_number)
        raise RuntimeError(f"Login retries for {service_id} ended without a ticket or an error")

    async def _attempt_login(self, service_id: str, attempt_number: int) -> SecurityTicket:
        if attempt_number > 1:
            stored = await self._store.get_valid(service_id)
            if stored is not None and not stored.is_expired(self._clock()):
                log.info(
                    "ticket.adopted_after_conflict",
                    service_id=service_id,
                    expires_at=stored.expires_at.isoformat(),
                )
                return stored
            log.info("ticket.login_retry", service_id=service_id)
        return await self._client.login(service_id)

    def _log_already_authenticated(self, service_id: str) -> Callable[[RetryCallState], None]:
        def _before_sleep(retry_state: RetryCallState) -> None:
            log.warning(
                "ticket.already_authenticated",
                service_id=service_id,
                attempt=retry_state.attempt_number,
                backoff_seconds=self._backoff,
            )

        return _before_sleep

    async def _persist(self, ticket: SecurityTicket) -> None:
        try:
            await self._store.save(ticket)
        except StorageError as e:
            log.error(
                "ticket.persist_failed",
                service_id=ticket.service_id,
                error=e.message,
            )

    # ─────────────────────── maintenance ───────────────────────

    async def invalidate(self, service_id: str) -> None:
        """Forget the ticket for `service_id` in memory and in the store."""
        self._tickets.pop(service_id, None)
        await self._store.delete(service_id)
        log.info("ticket.invalidated", service_id=service_id)

    async def sweep(self) -> int:
        """Drop expired tickets from memory and expired rows from the store."""
        now = self._clock()
        expired = [ticket for ticket in self._tickets.values() if ticket.is_expired(now)]
        for ticket in expired:
            if self._tickets.get(ticket.service_id) is ticket:
                del self._tickets[ticket.service_id]
            log.info(
                "ticket.expired",
                service_id=ticket.service_id,
                expired_at=ticket.expires_at.isoformat(),
            )
            self._notify("on_ticket_expired", ticket)
        deleted_rows = await self._store.delete_expired()
        if expired or deleted_rows:
            log.info("ticket.sweep_completed", removed=len(expired), deleted_rows=deleted_rows)
        return len(expired)

    async def start(self) -> None:
        """Clean the store, warm memory with persisted tickets and start the sweep."""
        await self._store.delete_expired()
        for ticket in await self._store.get_all_valid():
            if not ticket.is_expired(self._clock()):
                self._tickets.setdefault(ticket.service_id, ticket)
        log.info("ticket_cache.started", warmed=len(self._tickets))

        if self._scheduler is None:
            self._scheduler = create_sweep_scheduler(self.sweep, self._sweep_interval_minutes)
            self._scheduler.start()

    def stop(self) -> None:
        if self._scheduler is not None:
            self._scheduler.shutdown(wait=False)
            self._scheduler = None
        log.info("ticket_cache.stopped")

    def status(self) -> dict[str, Any]:
        """Snapshot for monitoring: one entry per known service id."""
        now = self._clock()
        return {
            "tickets": {
                service_id: {
                    "issued_at": ticket.issued_at.isoformat(),
                    "expires_at": ticket.expires_at.isoformat(),
                    "expired": ticket.is_expired(now),
                    "seconds_to_expiry": max(0, int(ticket.time_to_expiry(now).total_seconds())),
                }
                for service_id, ticket in sorted(self._tickets.items())
            },
            "refresh_in_progress": self._lock.locked(),
            "sweep_running": self._scheduler is not None,
        }

    # ─────────────────────── observers ───────────────────────

    def _notify(self, hook: str, *args: Any) -> None:
        for listener in self._listeners:
            try:
                getattr(listener, hook)(*args)
            except Exception:
                log.exception("ticket.listener_failed", listener=type(listener).__name__, hook=hook)
