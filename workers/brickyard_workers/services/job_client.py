from __future__ import annotations

from typing import Any

import httpx


class PipelineClient:
    """HTTP client for the worker-facing API: dispatch leases, job steps and the stale sweep."""

    def __init__(
        self,
        base_url: str,
        worker_id: str,
        api_key: str,
        *,
        cron_secret: str | None = None,
        timeout_seconds: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.headers = {
            "X-Worker-Id": worker_id,
            "X-API-Key": api_key,
        }
        self.cron_secret = cron_secret
        self.timeout_seconds = timeout_seconds
        self.transport = transport

    async def claim_dispatch(self, stages: list[str], lease_seconds: int = 300) -> dict[str, Any] | None:
        response = await self._post("/dispatches/claim", {"stages": stages, "lease_seconds": lease_seconds})
        return response.json()

    async def ack_dispatch(self, dispatch_id: str) -> dict[str, Any]:
        response = await self._post(f"/dispatches/{dispatch_id}/ack")
        return response.json()

    async def renew_dispatch(self, dispatch_id: str, lease_seconds: int = 300) -> dict[str, Any]:
        response = await self._post(f"/dispatches/{dispatch_id}/renew", {"lease_seconds": lease_seconds})
        return response.json()

    async def reap_expired_dispatches(self, limit: int = 100) -> dict[str, int]:
        response = await self._post("/dispatches/reap-expired", {"limit": limit})
        payload = response.json()
        return {"requeued": int(payload.get("requeued", 0)), "dead": int(payload.get("dead", 0))}

    async def run_stale_sweep(self) -> int:
        if not self.cron_secret:
            raise RuntimeError("cron secret is required for the scheduled stale sweep")
        async with self._client() as client:
            response = await client.get(
                f"{self.base_url}/jobs/cleanup/cron",
                headers={"Authorization": f"Bearer {self.cron_secret}"},
            )
            response.raise_for_status()
            return int(response.json().get("jobs_updated", 0))

    async def plan_reconcile(self, job_id: str) -> list[str]:
        response = await self._post(f"/reconcile/jobs/{job_id}/plan")
        return list(response.json().get("listing_ids") or [])

    async def reconcile_batch(self, job_id: str, index: int, listing_ids: list[str]) -> dict[str, Any]:
        response = await self._post(f"/reconcile/jobs/{job_id}/batches/{index}", {"listing_ids": listing_ids})
        return response.json()

    async def finalize_reconcile(self, job_id: str) -> dict[str, Any]:
        response = await self._post(f"/reconcile/jobs/{job_id}/finalize")
        return response.json()

    async def heartbeat_job(self, job_id: str, *, message: str | None = None, metadata: dict[str, Any] | None = None) -> dict[str, Any]:
        response = await self._post(f"/jobs/{job_id}/heartbeat", {"message": message, "metadata": metadata or {}})
        return response.json()

    async def fail_job(self, job_id: str, error: str) -> dict[str, Any]:
        response = await self._post(f"/jobs/{job_id}/fail", {"error": error})
        return response.json()

    async def _post(self, path: str, payload: dict[str, Any] | None = None) -> httpx.Response:
        async with self._client() as client:
            response = await client.post(f"{self.base_url}{path}", json=payload or {}, headers=self.headers)
            response.raise_for_status()
            return response

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout_seconds, transport=self.transport)
