import hmac

from fastapi import Depends, Header, HTTPException, status

from brickyard_api.core.auth import Principal, PrincipalType, parse_bearer_token
from brickyard_api.core.config import Settings, get_settings


async def get_worker_principal(
    settings: Settings = Depends(get_settings),
    x_api_key: str | None = Header(default=None, alias="X-API-Key"),
    x_worker_id: str | None = Header(default=None, alias="X-Worker-Id"),
) -> Principal:
    if not settings.worker_api_key:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="worker API key is not configured",
        )
    if not x_api_key or not x_worker_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="worker auth requires X-API-Key and X-Worker-Id",
        )
    if not hmac.compare_digest(x_api_key.encode("utf-8"), settings.worker_api_key.encode("utf-8")):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid worker credentials")

    return Principal(principal_type=PrincipalType.WORKER, subject=x_worker_id)


async def get_scheduler_principal(
    settings: Settings = Depends(get_settings),
    authorization: str | None = Header(default=None, alias="Authorization"),
) -> Principal:
    # No configured secret means the scheduled endpoint is closed, not open.
    if not settings.cron_secret:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="cron secret is not configured")

    token = parse_bearer_token(authorization)
    if token is None or not hmac.compare_digest(token.encode("utf-8"), settings.cron_secret.encode("utf-8")):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid cron secret")

    return Principal(principal_type=PrincipalType.SCHEDULER, subject="cron")
