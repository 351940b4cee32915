"""FastAPI dependencies for API authentication.

Provides dependency functions for FastAPI endpoints to validate API keys.
"""

from typing import Annotated

from fastapi import Header, HTTPException

from order_settlement_service.auth.api_key_validator import APIKeyValidator, Role


def get_api_key_from_header(
    x_api_key: Annotated[str | None, Header()] = None,
    validator: APIKeyValidator | None = None,
    required_role: Role = Role.ADMIN,
) -> str:
    """FastAPI dependency to extract and validate the API key from X-API-Key header.

    Args:
        x_api_key: API key from X-API-Key header (injected by FastAPI)
        validator: APIKeyValidator instance
        required_role: Role the endpoint requires

    Returns:
        str: The validated API key

    Raises:
        HTTPException: 401 if the key is missing or unknown, 403 if it lacks the role
    """
    if not x_api_key:
        raise HTTPException(status_code=401, detail="Missing API key")

    if validator is None:
        return x_api_key

    if validator.role_for(x_api_key) is None:
        raise HTTPException(status_code=401, detail="Invalid API key")

    if not validator.validate(x_api_key, required_role):
        raise HTTPException(status_code=403, detail=f"API key lacks {required_role.value} access")

    return x_api_key
