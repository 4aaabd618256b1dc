from __future__ import annotations

import hmac
import os

from fastapi import Header, HTTPException, status

# purpose: resolve the calling party's ledger address and guard administrative routes
# status: active

ADMIN_API_KEY = os.getenv("ADMIN_API_KEY", "")


def get_caller_address(
    x_party_address: str | None = Header(default=None, alias="X-Party-Address"),
) -> str:
    if not x_party_address or not x_party_address.strip():
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="X-Party-Address header required",
        )
    return x_party_address.strip()


def get_optional_caller(
    x_party_address: str | None = Header(default=None, alias="X-Party-Address"),
) -> str | None:
    if x_party_address and x_party_address.strip():
        return x_party_address.strip()
    return None


def require_admin(
    x_admin_token: str | None = Header(default=None, alias="X-Admin-Token"),
) -> None:
    expected = os.getenv("ADMIN_API_KEY", ADMIN_API_KEY)
    if not expected or not x_admin_token or not hmac.compare_digest(x_admin_token, expected):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin token required")
