from fastapi import Header, Query, Request, Response

from keygate.config import settings
from keygate.core.auth_gate import quota_headers
from keygate.core.errors import QuotaExceeded
from keygate.deps.gate import get_auth_gate
from keygate.models.api_key import ApiKey


def client_origin(request: Request) -> str | None:
    if settings.trust_forwarded_for:
        forwarded = request.headers.get("x-forwarded-for")
        if forwarded:
            return forwarded.split(",")[0].strip()[:64]
        real_ip = request.headers.get("x-real-ip")
        if real_ip:
            return real_ip.strip()[:64]
    return request.client.host if request.client else None


def pick_credential(*candidates: str | None) -> str | None:
    # header first, then query parameters, in the order given
    for value in candidates:
        if value and value.strip():
            return value.strip()
    return None


def client_key(required: bool = True, bypass_quota: bool = False):
    """
    Build a dependency that authenticates the caller's API key.

    With ``required=False`` a request without any credential passes through
    with ``None``; a credential that is present is still fully checked.
    """

    async def dependency(
        request: Request,
        response: Response,
        x_api_key: str | None = Header(default=None, alias="X-API-Key"),
        api_key: str | None = Query(default=None),
        apikey: str | None = Query(default=None),
    ) -> ApiKey | None:
        request.state.api_key_id = None
        request.state.client_ip = client_origin(request)

        credential = pick_credential(x_api_key, api_key, apikey)
        try:
            ctx = await get_auth_gate().authenticate(
                credential,
                required=required,
                bypass_quota=bypass_quota,
            )
        except QuotaExceeded as exc:
            # throttled requests still count against the key
            request.state.api_key_id = exc.api_key_id
            raise

        if ctx is None:
            return None

        request.state.api_key_id = ctx.api_key.id

        for name, value in quota_headers(ctx.quota).items():
            response.headers[name] = value

        return ctx.api_key

    return dependency


require_client_key = client_key()
optional_client_key = client_key(required=False)
