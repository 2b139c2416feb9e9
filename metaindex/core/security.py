import hashlib
import hmac

from fastapi import Depends, HTTPException, Request, status

from metaindex.core.auth import Principal, PrincipalType
from metaindex.core.config import Settings, get_settings

ADMIN_SCOPES = {"index:read", "index:admin"}


async def get_admin_principal(
    request: Request,
    settings: Settings = Depends(get_settings),
) -> Principal:
    api_key = request.headers.get(settings.api_key_header)
    if not api_key:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=f"admin auth requires {settings.api_key_header}",
        )

    configured = [value.strip().lower() for value in settings.admin_api_key_hashes if value.strip()]
    if not configured:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="admin auth is not configured",
        )

    key_hash = hash_api_key(api_key)
    matched = next((candidate for candidate in configured if hmac.compare_digest(candidate, key_hash)), None)
    if not matched:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid admin credentials")

    return Principal(
        principal_type=PrincipalType.ADMIN,
        subject=f"admin:{matched[:12]}",
        scopes=set(ADMIN_SCOPES),
    )


def hash_api_key(api_key: str) -> str:
    return hashlib.sha256(api_key.encode("utf-8")).hexdigest()
