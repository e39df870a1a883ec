# api/dependencies.py
from typing import Optional

from fastapi import Header, HTTPException


async def get_caller_id(x_user_id: Optional[str] = Header(default=None)) -> str:
    """Caller identity already verified by the gateway and forwarded as X-User-ID."""
    if not x_user_id or not x_user_id.strip():
        raise HTTPException(status_code=401, detail="User not authenticated")
    return x_user_id.strip()
