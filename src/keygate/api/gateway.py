from fastapi import APIRouter, Depends, Request

from keygate.deps.client_auth import optional_client_key, require_client_key
from keygate.models.api_key import ApiKey

router = APIRouter(tags=["gateway"])


@router.get("/protected")
async def protected(api_key: ApiKey = Depends(require_client_key)):
    return {"ok": True, "api_key_id": str(api_key.id)}


@router.get("/public")
async def public(api_key: ApiKey | None = Depends(optional_client_key)):
    return {"ok": True, "authenticated": api_key is not None}


@router.get("/whoami")
async def whoami(
    request: Request,
    api_key: ApiKey = Depends(require_client_key),
):
    return {
        "api_key_id": str(api_key.id),
        "label": api_key.label,
        "key_prefix": api_key.key_prefix,
        "rate_limit": api_key.rate_limit,
        "rate_window": api_key.rate_window,
        "expires_at": api_key.expires_at,
        "client_ip": getattr(request.state, "client_ip", None),
        "request_id": getattr(request.state, "request_id", None),
    }
