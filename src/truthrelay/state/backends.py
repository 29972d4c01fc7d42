"""Document backends for the watermark store.

A backend holds whole JSON documents keyed by id. ``merge`` must preserve
fields it was not asked to change, so other tools can annotate the same
record without being clobbered by the relay.
"""

from __future__ import annotations

import json
from typing import Any, Protocol
from urllib.parse import quote

import asyncpg  # type: ignore[import-not-found,import-untyped]
import httpx

from truthrelay.errors import StoreUnavailable
from truthrelay.logging import get_logger

log = get_logger("truthrelay.state.backends")

# Conflicting CouchDB revisions are retried this many times before giving up
MAX_MERGE_ATTEMPTS = 3


class DocumentBackend(Protocol):
    """Storage operations required by the watermark store.

    Every method raises :class:`StoreUnavailable` when the backing service
    cannot be reached or rejects the request.
    """

    name: str

    async def connect(self) -> None:
        """Ensure the database (or table) exists."""
        ...

    async def get(self, doc_id: str) -> dict[str, Any] | None:
        """Return the document body, or None if it does not exist."""
        ...

    async def create(self, doc_id: str, fields: dict[str, Any]) -> None:
        """Create the document if it does not exist yet."""
        ...

    async def merge(self, doc_id: str, fields: dict[str, Any]) -> None:
        """Update ``fields`` of the document, keeping all other fields."""
        ...

    async def close(self) -> None:
        ...


# ------------------------------------------------------------------
# CouchDB
# ------------------------------------------------------------------


class CouchDBBackend:
    """CouchDB over its HTTP API.

    Writes use optimistic concurrency: the current revision is read, the new
    fields are merged into it and the result is PUT back with ``_rev``. A
    409 conflict means someone else wrote in between, so the merge is redone.
    """

    name = "couchdb"

    def __init__(
        self,
        url: str,
        database: str,
        *,
        username: str | None = None,
        password: str | None = None,
        timeout: float = 10.0,
    ) -> None:
        self._url = url.rstrip("/")
        self._database = database
        self._auth = (username, password or "") if username else None
        self._timeout = timeout

    @property
    def database_url(self) -> str:
        return f"{self._url}/{quote(self._database, safe='')}"

    def _doc_url(self, doc_id: str) -> str:
        return f"{self.database_url}/{quote(doc_id, safe='')}"

    async def _request(
        self,
        method: str,
        url: str,
        json_data: dict[str, Any] | None = None,
    ) -> httpx.Response:
        try:
            async with httpx.AsyncClient(timeout=self._timeout, auth=self._auth) as client:
                return await client.request(method, url, json=json_data)
        except httpx.RequestError as exc:
            raise StoreUnavailable(f"CouchDB request failed: {exc}") from exc

    async def connect(self) -> None:
        resp = await self._request("PUT", self.database_url)
        if resp.status_code in (201, 202):
            log.info("couchdb_database_created", database=self._database)
            return
        if resp.status_code == 412:
            return  # already exists
        raise StoreUnavailable(
            f"CouchDB error {resp.status_code} creating {self._database}: {resp.text[:200]}"
        )

    async def get(self, doc_id: str) -> dict[str, Any] | None:
        resp = await self._request("GET", self._doc_url(doc_id))
        if resp.status_code == 404:
            return None
        if resp.status_code != 200:
            raise StoreUnavailable(
                f"CouchDB error {resp.status_code} reading {doc_id}: {resp.text[:200]}"
            )
        doc: dict[str, Any] = resp.json()
        return doc

    async def create(self, doc_id: str, fields: dict[str, Any]) -> None:
        resp = await self._request("PUT", self._doc_url(doc_id), json_data=dict(fields))
        if resp.status_code in (201, 202):
            log.info("couchdb_document_created", doc_id=doc_id)
            return
        if resp.status_code == 409:
            return  # created concurrently
        raise StoreUnavailable(
            f"CouchDB error {resp.status_code} creating {doc_id}: {resp.text[:200]}"
        )

    async def merge(self, doc_id: str, fields: dict[str, Any]) -> None:
        for attempt in range(1, MAX_MERGE_ATTEMPTS + 1):
            current = await self.get(doc_id) or {}
            body = {**current, **fields, "_id": doc_id}
            resp = await self._request("PUT", self._doc_url(doc_id), json_data=body)
            if resp.status_code in (201, 202):
                return
            if resp.status_code == 409:
                log.debug("couchdb_merge_conflict", doc_id=doc_id, attempt=attempt)
                continue
            raise StoreUnavailable(
                f"CouchDB error {resp.status_code} writing {doc_id}: {resp.text[:200]}"
            )
        raise StoreUnavailable(
            f"CouchDB write of {doc_id} kept conflicting after {MAX_MERGE_ATTEMPTS} attempts"
        )

    async def close(self) -> None:
        """Nothing to release; a client is opened per request."""


# ------------------------------------------------------------------
# PostgreSQL
# ------------------------------------------------------------------

_SCHEMA = """
CREATE TABLE IF NOT EXISTS relay_documents (
    doc_id      TEXT         PRIMARY KEY,
    body        JSONB        NOT NULL DEFAULT '{}'::jsonb,
    updated_at  TIMESTAMPTZ  NOT NULL DEFAULT now()
);
"""

_POSTGRES_ERRORS = (asyncpg.PostgresError, asyncpg.InterfaceError, OSError)


class PostgresBackend:
    """Documents stored as JSONB rows.

    ``merge`` relies on the JSONB ``||`` operator so unrelated keys already in
    the row survive the update.
    """

    name = "postgres"

    def __init__(self, dsn: str) -> None:
        self._dsn = dsn
        self._pool: asyncpg.Pool | None = None

    async def connect(self) -> None:
        if self._pool is None:
            try:
                self._pool = await asyncpg.create_pool(dsn=self._dsn, min_size=1, max_size=2)
            except _POSTGRES_ERRORS as exc:
                raise StoreUnavailable(f"PostgreSQL connection failed: {exc}") from exc
            log.info("postgres_pool_created", dsn=self._dsn.split("@")[-1])
        try:
            async with self._pool.acquire() as conn:
                await conn.execute(_SCHEMA)
        except _POSTGRES_ERRORS as exc:
            raise StoreUnavailable(f"PostgreSQL schema setup failed: {exc}") from exc

    def _require_pool(self) -> asyncpg.Pool:
        if self._pool is None:
            raise StoreUnavailable("PostgreSQL backend is not connected")
        return self._pool

    async def get(self, doc_id: str) -> dict[str, Any] | None:
        pool = self._require_pool()
        try:
            async with pool.acquire() as conn:
                row = await conn.fetchrow(
                    "SELECT body FROM relay_documents WHERE doc_id = $1",
                    doc_id,
                )
        except _POSTGRES_ERRORS as exc:
            raise StoreUnavailable(f"PostgreSQL read of {doc_id} failed: {exc}") from exc
        if row is None:
            return None
        body = row["body"]
        return json.loads(body) if isinstance(body, str) else dict(body)

    async def create(self, doc_id: str, fields: dict[str, Any]) -> None:
        pool = self._require_pool()
        try:
            async with pool.acquire() as conn:
                await conn.execute(
                    """
                    INSERT INTO relay_documents (doc_id, body)
                    VALUES ($1, $2::jsonb)
                    ON CONFLICT (doc_id) DO NOTHING
                    """,
                    doc_id,
                    json.dumps(fields),
                )
        except _POSTGRES_ERRORS as exc:
            raise StoreUnavailable(f"PostgreSQL create of {doc_id} failed: {exc}") from exc

    async def merge(self, doc_id: str, fields: dict[str, Any]) -> None:
        pool = self._require_pool()
        try:
            async with pool.acquire() as conn:
                await conn.execute(
                    """
                    INSERT INTO relay_documents (doc_id, body)
                    VALUES ($1, $2::jsonb)
                    ON CONFLICT (doc_id) DO UPDATE SET
                        body = relay_documents.body || EXCLUDED.body,
                        updated_at = now()
                    """,
                    doc_id,
                    json.dumps(fields),
                )
        except _POSTGRES_ERRORS as exc:
            raise StoreUnavailable(f"PostgreSQL write of {doc_id} failed: {exc}") from exc

    async def close(self) -> None:
        """Gracefully close the connection pool."""
        if self._pool is not None:
            await self._pool.close()
            self._pool = None
            log.info("postgres_pool_closed")
