"""
PostgreSQL ticket store adapter — durable security tickets across restarts.

Adapter layer — implements the TicketStore port using psycopg (v3)
AsyncConnection with parameterized queries. One short-lived connection
per operation; each operation is its own transaction.

Table mapping:
  SecurityTicket → afip_tickets (one row per service id, upserted on refresh)

Failure policy:
  save                  → StorageError (the caller decides how loud to be)
  get_valid / get_all   → logged, behave as a miss
  delete / delete_expired → logged, report nothing deleted

No ORM — raw parameterized SQL for maximum control and transparency.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

import psycopg
import structlog

from afip_invoicer.domain.errors import StorageError, ValidationError
from afip_invoicer.domain.models import SecurityTicket

log = structlog.get_logger()

SCHEMA = """
CREATE TABLE IF NOT EXISTS afip_tickets (
    service_id      VARCHAR(64) PRIMARY KEY,
    token           TEXT        NOT NULL,
    sign            TEXT        NOT NULL,
    expiration_time TIMESTAMPTZ NOT NULL,
    obtained_at     TIMESTAMPTZ NOT NULL,
    raw_response    TEXT        NOT NULL DEFAULT '',
    created_at      TIMESTAMPTZ NOT NULL DEFAULT now(),
    updated_at      TIMESTAMPTZ NOT NULL DEFAULT now()
);
CREATE INDEX IF NOT EXISTS ix_afip_tickets_expiration_time
    ON afip_tickets (expiration_time);
"""

_UPSERT = """
INSERT INTO afip_tickets (
    service_id, token, sign, expiration_time, obtained_at, raw_response
) VALUES (%s, %s, %s, %s, %s, %s)
ON CONFLICT (service_id) DO UPDATE SET
    token = EXCLUDED.token,
    sign = EXCLUDED.sign,
    expiration_time = EXCLUDED.expiration_time,
    obtained_at = EXCLUDED.obtained_at,
    raw_response = EXCLUDED.raw_response,
    updated_at = now()
"""

_COLUMNS = "service_id, token, sign, obtained_at, expiration_time, raw_response"

_SELECT_VALID = f"""
SELECT {_COLUMNS} FROM afip_tickets
WHERE service_id = %s AND expiration_time > %s
"""

_SELECT_ALL_VALID = f"""
SELECT {_COLUMNS} FROM afip_tickets
WHERE expiration_time > %s
ORDER BY service_id
"""


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _row_to_ticket(row: tuple[Any, ...]) -> SecurityTicket:
    service_id, token, sign, obtained_at, expiration_time, raw_response = row
    return SecurityTicket(
        service_id=service_id,
        token=token,
        sign=sign,
        issued_at=obtained_at.astimezone(UTC),
        expires_at=expiration_time.astimezone(UTC),
        raw_response=raw_response or "",
    )


class PsycopgTicketStore:
    """
    Persist security tickets to PostgreSQL.

    Implements the TicketStore port.
    """

    def __init__(self, dsn: str, clock: Callable[[], datetime] = _utcnow) -> None:
        self._dsn = dsn
        self._clock = clock

    async def ensure_schema(self) -> None:
        """Create the afip_tickets table and its index when missing."""
        try:
            async with await psycopg.AsyncConnection.connect(self._dsn) as conn:
                await conn.execute(SCHEMA)
        except psycopg.Error as e:
            raise StorageError(f"Could not create ticket schema: {e}") from e
        log.info("ticket_store.schema_ready")

    async def save(self, ticket: SecurityTicket) -> None:
        """Insert or replace the row for `ticket.service_id`."""
        try:
            async with await psycopg.AsyncConnection.connect(self._dsn) as conn:
                await conn.execute(
                    _UPSERT,
                    (
                        ticket.service_id,
                        ticket.token,
                        ticket.sign,
                        ticket.expires_at,
                        ticket.issued_at,
                        ticket.raw_response,
                    ),
                )
        except psycopg.Error as e:
            raise StorageError(f"Could not persist ticket for {ticket.service_id!r}: {e}") from e
        log.info(
            "ticket_store.saved",
            service_id=ticket.service_id,
            expires_at=ticket.expires_at.isoformat(),
        )

    async def get_valid(self, service_id: str) -> SecurityTicket | None:
        """Return the stored ticket for `service_id` only if it has not expired."""
        try:
            async with await psycopg.AsyncConnection.connect(self._dsn) as conn:
                cur = await conn.execute(_SELECT_VALID, (service_id, self._clock()))
                row = await cur.fetchone()
        except psycopg.Error as e:
            log.warning("ticket_store.read_failed", service_id=service_id, error=str(e))
            return None
        if row is None:
            return None
        try:
            return _row_to_ticket(row)
        except ValidationError as e:
            log.warning("ticket_store.row_invalid", service_id=service_id, error=e.message)
            return None

    async def get_all_valid(self) -> list[SecurityTicket]:
        """All unexpired tickets, used to warm the in-memory cache on start."""
        try:
            async with await psycopg.AsyncConnection.connect(self._dsn) as conn:
                cur = await conn.execute(_SELECT_ALL_VALID, (self._clock(),))
                rows = await cur.fetchall()
        except psycopg.Error as e:
            log.warning("ticket_store.read_failed", service_id=None, error=str(e))
            return []

        tickets = []
        for row in rows:
            try:
                tickets.append(_row_to_ticket(row))
            except ValidationError as e:
                log.warning("ticket_store.row_invalid", service_id=row[0], error=e.message)
        return tickets

    async def delete(self, service_id: str) -> None:
        try:
            async with await psycopg.AsyncConnection.connect(self._dsn) as conn:
                await conn.execute("DELETE FROM afip_tickets WHERE service_id = %s", (service_id,))
        except psycopg.Error as e:
            log.warning("ticket_store.delete_failed", service_id=service_id, error=str(e))
            return
        log.info("ticket_store.deleted", service_id=service_id)

    async def delete_expired(self) -> int:
        """Remove every row whose expiration time has passed; returns the row count."""
        try:
            async with await psycopg.AsyncConnection.connect(self._dsn) as conn:
                cur = await conn.execute(
                    "DELETE FROM afip_tickets WHERE expiration_time <= %s", (self._clock(),)
                )
                deleted = cur.rowcount
        except psycopg.Error as e:
            log.warning("ticket_store.cleanup_failed", error=str(e))
            return 0
        if deleted:
            log.info("ticket_store.expired_deleted", rows=deleted)
        return deleted
