from fastapi import Header
from keygate.config import settings
from keygate.core.errors import AdminUnauthorized
from keygate.core.keys import constant_time_equals


async def require_admin(x_admin_token: str | None = Header(default=None, alias="X-Admin-Token")):
    if not x_admin_token or not constant_time_equals(x_admin_token, settings.admin_token):
        raise AdminUnauthorized()
