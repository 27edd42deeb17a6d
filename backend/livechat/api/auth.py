from typing import Optional

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import APIKeyHeader

from .deps import get_services

api_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)


def verify_operator(request: Request, api_key: Optional[str] = Depends(api_key_header)):
    keys = set(get_services(request).settings.operator_api_keys)
    if not api_key or api_key not in keys:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Invalid API key"
        )
    return api_key
