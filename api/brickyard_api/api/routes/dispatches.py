from fastapi import APIRouter, Depends

from brickyard_api.api.deps import get_dispatcher, to_http_exception
from brickyard_api.core.security import get_worker_principal
from brickyard_api.schemas.dispatch import (
    DispatchClaimRequest,
    DispatchOut,
    DispatchReapOut,
    DispatchReapRequest,
    DispatchRenewRequest,
)
from brickyard_api.services.dispatch import Dispatcher
from brickyard_api.services.errors import PipelineError

router = APIRouter()


@router.post("/claim", response_model=DispatchOut | None)
async def claim_dispatch(
    payload: DispatchClaimRequest,
    principal=Depends(get_worker_principal),
    dispatcher: Dispatcher = Depends(get_dispatcher),
) -> DispatchOut | None:
    try:
        dispatch = await dispatcher.claim(payload.stages, principal.subject, payload.lease_seconds)
    except PipelineError as exc:
        raise to_http_exception(exc) from exc
    return DispatchOut(**dispatch) if dispatch else None


@router.post("/reap-expired", response_model=DispatchReapOut)
async def reap_expired_dispatches(
    payload: DispatchReapRequest | None = None,
    principal=Depends(get_worker_principal),
    dispatcher: Dispatcher = Depends(get_dispatcher),
) -> DispatchReapOut:
    try:
        result = await dispatcher.requeue_expired(limit=payload.limit if payload else 100)
    except PipelineError as exc:
        raise to_http_exception(exc) from exc
    return DispatchReapOut(**result)


@router.post("/{dispatch_id}/ack", response_model=DispatchOut)
async def ack_dispatch(
    dispatch_id: str,
    principal=Depends(get_worker_principal),
    dispatcher: Dispatcher = Depends(get_dispatcher),
) -> DispatchOut:
    try:
        dispatch = await dispatcher.ack(dispatch_id, principal.subject)
    except PipelineError as exc:
        raise to_http_exception(exc) from exc
    return DispatchOut(**dispatch)


@router.post("/{dispatch_id}/renew", response_model=DispatchOut)
async def renew_dispatch(
    dispatch_id: str,
    payload: DispatchRenewRequest | None = None,
    principal=Depends(get_worker_principal),
    dispatcher: Dispatcher = Depends(get_dispatcher),
) -> DispatchOut:
    try:
        dispatch = await dispatcher.renew(dispatch_id, principal.subject, payload.lease_seconds if payload else None)
    except PipelineError as exc:
        raise to_http_exception(exc) from exc
    return DispatchOut(**dispatch)
