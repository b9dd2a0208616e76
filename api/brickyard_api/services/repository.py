from __future__ import annotations

import asyncio
import json
from contextlib import contextmanager
from datetime import datetime, timedelta
from functools import lru_cache
from typing import Any, Iterator

import asyncpg  # type: ignore[import-untyped]
from asyncpg import exceptions as pg_exc

from brickyard_api.core.config import get_settings
from brickyard_api.services.errors import (
    AlreadyTerminalError,
    ConflictError,
    NotFoundError,
    TransientDependencyError,
)
from brickyard_api.services.store import InMemoryRepository

_TRANSIENT_ERRORS: tuple[type[BaseException], ...] = (
    OSError,
    asyncio.TimeoutError,
    pg_exc.PostgresConnectionError,
    pg_exc.CannotConnectNowError,
    pg_exc.TooManyConnectionsError,
)

_JOB_COLUMNS = """
  id::text as id,
  type,
  marketplace,
  dataset_id::text as dataset_id,
  status,
  started_at,
  updated_at,
  completed_at,
  timeout_at,
  error_message,
  last_update,
  metadata
"""

_LISTING_COLUMNS = """
  l.id::text as id,
  l.marketplace,
  l.title,
  l.description,
  l.sanitized_title,
  l.sanitized_description,
  l.status,
  l.reconciled_at,
  l.reconciliation_version
"""

_DISPATCH_COLUMNS = """
  d.id::text as id,
  d.job_id::text as job_id,
  d.stage,
  d.params,
  d.status,
  d.attempts,
  d.locked_by,
  d.lease_expires_at,
  d.created_at
"""


@contextmanager
def _translate_errors() -> Iterator[None]:
    try:
        yield
    except pg_exc.InvalidTextRepresentationError as exc:
        raise NotFoundError("malformed identifier") from exc
    except asyncpg.InterfaceError as exc:
        # Client-side argument encoding failures are InterfaceError and ValueError at once.
        if isinstance(exc, ValueError):
            raise NotFoundError("malformed identifier") from exc
        raise TransientDependencyError(f"database unavailable: {exc}") from exc
    except _TRANSIENT_ERRORS as exc:
        raise TransientDependencyError(f"database unavailable: {exc}") from exc


class PostgresRepository:
    def __init__(self, database_url: str | None, min_pool_size: int, max_pool_size: int) -> None:
        self.database_url = database_url
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self._pool: asyncpg.Pool | None = None

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

    async def ping(self) -> bool:
        pool = await self._get_pool()
        with _translate_errors():
            return bool(await pool.fetchval("select 1"))

    # Jobs

    async def insert_job(
        self,
        *,
        job_type: str,
        marketplace: str,
        dataset_id: str | None,
        started_at: datetime,
        timeout_at: datetime,
        metadata: dict[str, Any],
        last_update: str,
    ) -> dict[str, Any]:
        pool = await self._get_pool()
        try:
            with _translate_errors():
                row = await pool.fetchrow(
                    f"""
                    insert into jobs (
                      type, marketplace, dataset_id, status,
                      started_at, updated_at, timeout_at, last_update, metadata
                    )
                    values ($1, $2, $3::uuid, 'running', $4, $4, $5, $6, $7::jsonb)
                    returning {_JOB_COLUMNS}
                    """,
                    job_type,
                    marketplace,
                    dataset_id,
                    started_at,
                    timeout_at,
                    last_update,
                    json.dumps(metadata),
                )
        except pg_exc.ForeignKeyViolationError as exc:
            raise NotFoundError("dataset not found") from exc
        return self._job_row_to_dict(row)

    async def get_job(self, job_id: str) -> dict[str, Any]:
        pool = await self._get_pool()
        with _translate_errors():
            row = await pool.fetchrow(f"select {_JOB_COLUMNS} from jobs where id = $1::uuid", job_id)
        if not row:
            raise NotFoundError("job not found")
        return self._job_row_to_dict(row)

    async def list_jobs(
        self,
        *,
        job_type: str | None,
        status: str | None,
        dataset_id: str | None,
        limit: int,
        offset: int,
    ) -> list[dict[str, Any]]:
        pool = await self._get_pool()
        conditions: list[str] = []
        params: list[Any] = []

        def bind(value: Any) -> str:
            params.append(value)
            return f"${len(params)}"

        if job_type:
            conditions.append(f"type = {bind(job_type)}")
        if status:
            conditions.append(f"status = {bind(status)}")
        if dataset_id:
            conditions.append(f"dataset_id = {bind(dataset_id)}::uuid")

        where_sql = " and ".join(conditions) if conditions else "true"
        limit_token = bind(limit)
        offset_token = bind(offset)

        with _translate_errors():
            rows = await pool.fetch(
                f"""
                select {_JOB_COLUMNS}
                from jobs
                where {where_sql}
                order by started_at desc, id asc
                limit {limit_token}
                offset {offset_token}
                """,
                *params,
            )
        return [self._job_row_to_dict(row) for row in rows]

    async def list_dataset_jobs(self, dataset_id: str) -> list[dict[str, Any]]:
        pool = await self._get_pool()
        with _translate_errors():
            rows = await pool.fetch(
                f"""
                select {_JOB_COLUMNS}
                from jobs
                where dataset_id = $1::uuid
                order by started_at desc, id asc
                """,
                dataset_id,
            )
        return [self._job_row_to_dict(row) for row in rows]

    async def get_latest_job(self, *, dataset_id: str, job_type: str) -> dict[str, Any] | None:
        pool = await self._get_pool()
        with _translate_errors():
            row = await pool.fetchrow(
                f"""
                select {_JOB_COLUMNS}
                from jobs
                where dataset_id = $1::uuid and type = $2
                order by started_at desc
                limit 1
                """,
                dataset_id,
                job_type,
            )
        return self._job_row_to_dict(row) if row else None

    async def touch_running_job(
        self,
        job_id: str,
        *,
        metadata_patch: dict[str, Any],
        last_update: str | None,
        now: datetime,
    ) -> dict[str, Any]:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            with _translate_errors():
                row = await conn.fetchrow(
                    f"""
                    update jobs
                    set
                      metadata = metadata || $2::jsonb,
                      updated_at = greatest(updated_at, $3),
                      last_update = coalesce($4, last_update)
                    where id = $1::uuid and status = 'running'
                    returning {_JOB_COLUMNS}
                    """,
                    job_id,
                    json.dumps(metadata_patch),
                    now,
                    last_update,
                )
                if not row:
                    await self._raise_not_running(conn, job_id)
        return self._job_row_to_dict(row)

    async def record_reconcile_batch(
        self,
        job_id: str,
        *,
        index: int,
        batch: dict[str, Any],
        last_update: str | None,
        now: datetime,
    ) -> dict[str, Any]:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            with _translate_errors():
                row = await conn.fetchrow(
                    f"""
                    with merged as (
                      select
                        id as merged_id,
                        coalesce(metadata -> 'reconcile_batches', '{{}}'::jsonb)
                          || jsonb_build_object($2::text, $3::jsonb) as batches
                      from jobs
                      where id = $1::uuid and status = 'running'
                      for update
                    )
                    update jobs
                    set
                      metadata = jobs.metadata || jsonb_build_object(
                        'reconcile_batches', merged.batches,
                        'listings_processed', (
                          select coalesce(sum((b.value ->> 'succeeded')::int + (b.value ->> 'failed')::int), 0)
                          from jsonb_each(merged.batches) b
                        )
                      ),
                      updated_at = greatest(jobs.updated_at, $4),
                      last_update = coalesce($5, jobs.last_update)
                    from merged
                    where jobs.id = merged.merged_id
                    returning {_JOB_COLUMNS}
                    """,
                    job_id,
                    str(index),
                    json.dumps(batch),
                    now,
                    last_update,
                )
                if not row:
                    await self._raise_not_running(conn, job_id)
        return self._job_row_to_dict(row)

    async def finish_running_job(
        self,
        job_id: str,
        *,
        status: str,
        error_message: str | None,
        metadata_patch: dict[str, Any],
        last_update: str,
        now: datetime,
    ) -> dict[str, Any]:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            with _translate_errors():
                row = await conn.fetchrow(
                    f"""
                    update jobs
                    set
                      status = $2,
                      error_message = $3,
                      metadata = metadata || $4::jsonb,
                      last_update = $5,
                      completed_at = $6,
                      updated_at = greatest(updated_at, $6)
                    where id = $1::uuid and status = 'running'
                    returning {_JOB_COLUMNS}
                    """,
                    job_id,
                    status,
                    error_message,
                    json.dumps(metadata_patch),
                    last_update,
                    now,
                )
                if not row:
                    await self._raise_not_running(conn, job_id)
        return self._job_row_to_dict(row)

    async def mark_stale_jobs_timed_out(
        self,
        *,
        inactivity: timedelta,
        max_runtime: timedelta,
        now: datetime | None = None,
    ) -> list[str]:
        # The SQL function compares against the database clock; ``now`` is accepted for
        # interface parity with the in-memory store.
        pool = await self._get_pool()
        with _translate_errors():
            rows = await pool.fetch(
                "select job_id::text as id from mark_stale_jobs_as_timed_out($1::int, $2::int)",
                int(inactivity.total_seconds() // 60),
                int(max_runtime.total_seconds() // 60),
            )
        return [row["id"] for row in rows]

    async def list_stale_running_jobs(
        self,
        *,
        inactive_before: datetime,
        started_before: datetime,
        now: datetime,
    ) -> list[dict[str, Any]]:
        pool = await self._get_pool()
        with _translate_errors():
            rows = await pool.fetch(
                f"""
                select {_JOB_COLUMNS}
                from jobs
                where status = 'running'
                  and (updated_at < $1 or timeout_at < $3 or started_at < $2)
                order by started_at asc
                """,
                inactive_before,
                started_before,
                now,
            )
        return [self._job_row_to_dict(row) for row in rows]

    async def time_out_running_job(
        self,
        job_id: str,
        *,
        error_message: str,
        last_update: str,
        now: datetime,
    ) -> bool:
        pool = await self._get_pool()
        with _translate_errors():
            updated = await pool.fetchval(
                """
                update jobs
                set
                  status = 'timed_out',
                  error_message = $2,
                  last_update = $3,
                  completed_at = $4,
                  updated_at = greatest(updated_at, $4)
                where id = $1::uuid and status = 'running'
                returning id::text
                """,
                job_id,
                error_message,
                last_update,
                now,
            )
        return updated is not None

    async def get_stale_job_stats(
        self,
        *,
        inactive_before: datetime,
        started_before: datetime,
        now: datetime,
    ) -> dict[str, Any]:
        pool = await self._get_pool()
        with _translate_errors():
            row = await pool.fetchrow(
                """
                select
                  count(*) as running_jobs,
                  count(*) filter (
                    where updated_at < $1 or timeout_at < $3 or started_at < $2
                  ) as stale_jobs,
                  min(started_at) as oldest_running_started_at
                from jobs
                where status = 'running'
                """,
                inactive_before,
                started_before,
                now,
            )
        return {
            "running_jobs": int(row["running_jobs"]),
            "stale_jobs": int(row["stale_jobs"]),
            "oldest_running_started_at": row["oldest_running_started_at"],
        }

    # Datasets and listings

    async def get_dataset(self, dataset_id: str) -> dict[str, Any]:
        pool = await self._get_pool()
        with _translate_errors():
            row = await pool.fetchrow(
                """
                select id::text as id, name, marketplace, created_at
                from datasets
                where id = $1::uuid
                """,
                dataset_id,
            )
        if not row:
            raise NotFoundError("dataset not found")
        return dict(row)

    async def fetch_listings_for_reconciliation(
        self,
        *,
        dataset_id: str | None,
        listing_ids: list[str] | None,
        limit: int | None,
        version: str,
        rerun: bool,
    ) -> list[dict[str, Any]]:
        pool = await self._get_pool()
        conditions: list[str] = []
        params: list[Any] = []

        def bind(value: Any) -> str:
            params.append(value)
            return f"${len(params)}"

        if listing_ids:
            conditions.append(f"l.id = any({bind(listing_ids)}::uuid[])")
        else:
            conditions.append("l.status = 'active'")
            if dataset_id:
                conditions.append(
                    "exists (select 1 from dataset_listings dl "
                    f"where dl.listing_id = l.id and dl.dataset_id = {bind(dataset_id)}::uuid)"
                )
        if not rerun:
            conditions.append(
                f"(l.reconciled_at is null or l.reconciliation_version is distinct from {bind(version)})"
            )

        limit_sql = f"limit {bind(limit)}" if limit else ""
        with _translate_errors():
            rows = await pool.fetch(
                f"""
                select {_LISTING_COLUMNS}
                from listings l
                where {' and '.join(conditions)}
                order by l.created_at asc, l.id asc
                {limit_sql}
                """,
                *params,
            )
        return [dict(row) for row in rows]

    async def get_listings(self, listing_ids: list[str]) -> list[dict[str, Any]]:
        if not listing_ids:
            return []
        pool = await self._get_pool()
        with _translate_errors():
            rows = await pool.fetch(
                f"select {_LISTING_COLUMNS} from listings l where l.id = any($1::uuid[])",
                listing_ids,
            )
        return [dict(row) for row in rows]

    async def mark_listing_reconciled(self, listing_id: str, *, version: str, reconciled_at: datetime) -> None:
        pool = await self._get_pool()
        with _translate_errors():
            updated = await pool.fetchval(
                """
                update listings
                set reconciled_at = $2, reconciliation_version = $3, updated_at = $2
                where id = $1::uuid
                returning id::text
                """,
                listing_id,
                reconciled_at,
                version,
            )
        if updated is None:
            raise NotFoundError("listing not found")

    # Catalog

    async def get_catalog_entities_by_identifiers(self, identifiers: list[str]) -> list[dict[str, Any]]:
        if not identifiers:
            return []
        pool = await self._get_pool()
        with _translate_errors():
            rows = await pool.fetch(
                """
                select id::text as id, identifier, name
                from catalog_entities
                where identifier = any($1::text[])
                   or split_part(identifier, '-', 1) = any($1::text[])
                order by identifier asc
                """,
                identifiers,
            )
        return [dict(row) for row in rows]

    async def get_catalog_entities_by_ids(self, entity_ids: list[str]) -> list[dict[str, Any]]:
        if not entity_ids:
            return []
        pool = await self._get_pool()
        with _translate_errors():
            rows = await pool.fetch(
                "select id::text as id, identifier, name from catalog_entities where id = any($1::uuid[])",
                entity_ids,
            )
        return [dict(row) for row in rows]

    # Links

    async def upsert_link(
        self,
        *,
        listing_id: str,
        catalog_entity_id: str,
        nature: str,
        reconciliation_version: str,
        potential_year_match: bool,
        now: datetime,
    ) -> dict[str, Any]:
        pool = await self._get_pool()
        with _translate_errors():
            row = await pool.fetchrow(
                """
                insert into listing_catalog_links (
                  listing_id, catalog_entity_id, nature, status,
                  reconciliation_version, potential_year_match, created_at, updated_at
                )
                values ($1::uuid, $2::uuid, $3, 'active', $4, $5, $6, $6)
                on conflict (listing_id, catalog_entity_id) where status = 'active'
                do update set
                  nature = excluded.nature,
                  reconciliation_version = excluded.reconciliation_version,
                  potential_year_match = excluded.potential_year_match,
                  updated_at = excluded.updated_at
                returning
                  id::text as id,
                  listing_id::text as listing_id,
                  catalog_entity_id::text as catalog_entity_id,
                  nature,
                  status,
                  reconciliation_version,
                  potential_year_match,
                  created_at,
                  updated_at
                """,
                listing_id,
                catalog_entity_id,
                nature,
                reconciliation_version,
                potential_year_match,
                now,
            )
        return dict(row)

    async def apply_link_cleanup(
        self,
        *,
        listing_id: str,
        kept_entity_ids: list[str],
        mode: str,
        now: datetime,
    ) -> int:
        pool = await self._get_pool()
        if mode == "delete":
            statement = """
                delete from listing_catalog_links
                where listing_id = $1::uuid
                  and status = 'active'
                  and not (catalog_entity_id = any($2::uuid[]))
                returning id
            """
            params: tuple[Any, ...] = (listing_id, kept_entity_ids)
        elif mode == "supersede":
            statement = """
                update listing_catalog_links
                set status = 'superseded', updated_at = $3
                where listing_id = $1::uuid
                  and status = 'active'
                  and not (catalog_entity_id = any($2::uuid[]))
                returning id
            """
            params = (listing_id, kept_entity_ids, now)
        else:
            return 0

        with _translate_errors():
            rows = await pool.fetch(statement, *params)
        return len(rows)

    async def list_links(self, listing_ids: list[str], *, status: str | None = None) -> list[dict[str, Any]]:
        if not listing_ids:
            return []
        pool = await self._get_pool()
        with _translate_errors():
            rows = await pool.fetch(
                """
                select
                  k.id::text as id,
                  k.listing_id::text as listing_id,
                  k.catalog_entity_id::text as catalog_entity_id,
                  c.identifier,
                  c.name,
                  k.nature,
                  k.status,
                  k.reconciliation_version,
                  k.potential_year_match,
                  k.created_at,
                  k.updated_at
                from listing_catalog_links k
                join catalog_entities c on c.id = k.catalog_entity_id
                where k.listing_id = any($1::uuid[])
                  and ($2::text is null or k.status = $2)
                order by k.created_at asc, c.identifier asc
                """,
                listing_ids,
                status,
            )
        return [dict(row) for row in rows]

    # Dispatch queue

    async def enqueue_dispatch(self, *, job_id: str, stage: str, params: dict[str, Any]) -> dict[str, Any]:
        pool = await self._get_pool()
        with _translate_errors():
            row = await pool.fetchrow(
                f"""
                insert into job_dispatches as d (job_id, stage, params)
                values ($1::uuid, $2, $3::jsonb)
                returning {_DISPATCH_COLUMNS}
                """,
                job_id,
                stage,
                json.dumps(params),
            )
        return self._dispatch_row_to_dict(row)

    async def claim_next_dispatch(
        self,
        *,
        stages: list[str],
        worker_id: str,
        lease_seconds: int,
    ) -> dict[str, Any] | None:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            with _translate_errors():
                async with conn.transaction():
                    row = await conn.fetchrow(
                        f"""
                        with next_dispatch as (
                          select id
                          from job_dispatches
                          where status = 'pending'
                            and stage = any($1::text[])
                            and available_at <= now()
                          order by available_at asc, created_at asc
                          limit 1
                          for update skip locked
                        )
                        update job_dispatches d
                        set
                          status = 'claimed',
                          locked_by = $2,
                          locked_at = now(),
                          lease_expires_at = now() + ($3::int * interval '1 second'),
                          attempts = attempts + 1
                        from next_dispatch n
                        where d.id = n.id
                        returning {_DISPATCH_COLUMNS}
                        """,
                        stages,
                        worker_id,
                        lease_seconds,
                    )
        return self._dispatch_row_to_dict(row) if row else None

    async def ack_dispatch(self, dispatch_id: str, *, worker_id: str) -> dict[str, Any]:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            with _translate_errors():
                row = await conn.fetchrow(
                    f"""
                    update job_dispatches d
                    set
                      status = 'delivered',
                      delivered_at = now(),
                      lease_expires_at = null
                    where d.id = $1::uuid and d.status = 'claimed' and d.locked_by = $2
                    returning {_DISPATCH_COLUMNS}
                    """,
                    dispatch_id,
                    worker_id,
                )
                if not row:
                    current = await conn.fetchrow(
                        "select status, locked_by from job_dispatches where id = $1::uuid",
                        dispatch_id,
                    )
                    if not current:
                        raise NotFoundError("dispatch not found")
                    if current["status"] == "delivered" and current["locked_by"] == worker_id:
                        row = await conn.fetchrow(
                            f"select {_DISPATCH_COLUMNS} from job_dispatches d where d.id = $1::uuid",
                            dispatch_id,
                        )
                    else:
                        raise ConflictError("dispatch is not leased by this worker")
        return self._dispatch_row_to_dict(row)

    async def renew_dispatch_lease(self, dispatch_id: str, *, worker_id: str, lease_seconds: int) -> dict[str, Any]:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            with _translate_errors():
                row = await conn.fetchrow(
                    f"""
                    update job_dispatches d
                    set lease_expires_at = now() + ($3::int * interval '1 second')
                    where d.id = $1::uuid and d.status = 'claimed' and d.locked_by = $2
                    returning {_DISPATCH_COLUMNS}
                    """,
                    dispatch_id,
                    worker_id,
                    lease_seconds,
                )
                if not row:
                    exists = await conn.fetchval("select 1 from job_dispatches where id = $1::uuid", dispatch_id)
                    if not exists:
                        raise NotFoundError("dispatch not found")
                    raise ConflictError("dispatch is not leased by this worker")
        return self._dispatch_row_to_dict(row)

    async def requeue_expired_dispatches(self, *, max_attempts: int, limit: int) -> dict[str, int]:
        pool = await self._get_pool()
        bounded_limit = max(1, min(limit, 1000))

        async with pool.acquire() as conn:
            with _translate_errors():
                async with conn.transaction():
                    rows = await conn.fetch(
                        """
                        with expired as (
                          select id
                          from job_dispatches
                          where status = 'claimed'
                            and lease_expires_at is not null
                            and lease_expires_at <= now()
                          order by lease_expires_at asc
                          limit $1
                          for update skip locked
                        )
                        update job_dispatches d
                        set
                          status = case when d.attempts >= $2 then 'dead' else 'pending' end,
                          locked_by = null,
                          locked_at = null,
                          lease_expires_at = null,
                          available_at = now()
                        from expired e
                        where d.id = e.id
                        returning d.status
                        """,
                        bounded_limit,
                        max(1, max_attempts),
                    )
        dead = sum(1 for row in rows if row["status"] == "dead")
        return {"requeued": len(rows) - dead, "dead": dead}

    async def _raise_not_running(self, conn: asyncpg.Connection, job_id: str) -> None:
        current = await conn.fetchval("select status from jobs where id = $1::uuid", job_id)
        if current is None:
            raise NotFoundError("job not found")
        raise AlreadyTerminalError(f"job {job_id} is already {current}")

    async def _get_pool(self) -> asyncpg.Pool:
        if not self.database_url:
            raise TransientDependencyError("BY_DATABASE_URL is required")

        if self._pool is not None:
            return self._pool

        try:
            self._pool = await asyncpg.create_pool(
                dsn=self.database_url,
                min_size=self.min_pool_size,
                max_size=self.max_pool_size,
                command_timeout=15,
            )
            return self._pool
        except Exception as exc:  # pragma: no cover - depends on environment
            raise TransientDependencyError("database unavailable") from exc

    @staticmethod
    def _job_row_to_dict(row: asyncpg.Record) -> dict[str, Any]:
        job = dict(row)
        job["metadata"] = _coerce_json_dict(job.get("metadata"))
        return job

    @staticmethod
    def _dispatch_row_to_dict(row: asyncpg.Record) -> dict[str, Any]:
        dispatch = dict(row)
        dispatch["params"] = _coerce_json_dict(dispatch.get("params"))
        return dispatch


def _coerce_json_dict(value: Any) -> dict[str, Any]:
    if isinstance(value, str):
        try:
            value = json.loads(value)
        except json.JSONDecodeError:
            return {}
    if isinstance(value, dict):
        return value
    return {}


@lru_cache
def get_repository() -> Any:
    settings = get_settings()
    if settings.storage_backend == "memory":
        return InMemoryRepository()
    return PostgresRepository(
        database_url=settings.database_url,
        min_pool_size=settings.database_pool_min_size,
        max_pool_size=settings.database_pool_max_size,
    )
