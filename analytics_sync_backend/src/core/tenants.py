from __future__ import annotations

from fastapi import Request

from src.core.errors import ValidationError
from src.core.settings import get_settings


# PUBLIC_INTERFACE
def get_tenant_id(request: Request) -> str:
    """Resolve tenant ID from the configured tenant header; falls back to the default tenant if missing.

    The header is set by the portal's authentication layer, which is trusted here.
    """
    settings = get_settings()
    raw = request.headers.get(settings.tenant.TENANT_HEADER_NAME) or settings.tenant.DEFAULT_TENANT_ID
    tenant_id = raw.strip()
    # '::' separates tenant and provider in stored document ids
    if not tenant_id or "::" in tenant_id:
        raise ValidationError("Invalid tenant id", details={"header": settings.tenant.TENANT_HEADER_NAME})
    return tenant_id
