from __future__ import annotations

from typing import Any

from brickyard_workers.jobs.reconcile import execute_reconcile

HANDLED_STAGES = frozenset({"reconcile"})


def claimable_stages(configured: list[str]) -> list[str]:
    """Configured stages that have a handler; anything else is never claimed."""
    return [stage for stage in configured if stage in HANDLED_STAGES]


async def execute_dispatch(
    dispatch: dict[str, Any],
    client: Any,
    *,
    reconcile_batch_size: int = 100,
    lease_seconds: int | None = None,
) -> dict[str, Any]:
    if dispatch.get("stage") == "reconcile":
        return await execute_reconcile(
            dispatch,
            client,
            batch_size=reconcile_batch_size,
            lease_seconds=lease_seconds,
        )
    raise ValueError(f"no handler registered for stage {dispatch.get('stage')!r}")
