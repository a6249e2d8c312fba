"""Connection endpoints behind the token and session middleware."""

from typing import Any

from fastapi import APIRouter, Depends, Request

from mongogui.core.errors import SessionError, ValidationError
from mongogui.schemas.auth import ConnectionValidateRequest
from mongogui.services.connection import parse_connection_string
from mongogui.services.manager import ServiceManager, get_service_manager

router = APIRouter(prefix="/connection", tags=["connection"])


@router.get("")
async def get_connection(
    request: Request,
    manager: ServiceManager = Depends(get_service_manager),
) -> dict[str, Any]:
    """Describe the connection stored in the caller's session.

    The connection string is never returned as-is; credentials are redacted.
    """
    session_id = getattr(request.state, "session_id", None)
    if session_id is None:
        raise SessionError("Session ID is required", code="MISSING_SESSION")

    connection_string = manager.get_connection_string_from_session(session_id)
    if connection_string is None:
        return {"connected": False, "connection": None, "metadata": None}

    try:
        descriptor = parse_connection_string(connection_string)
    except ValidationError:
        return {"connected": False, "connection": None, "metadata": None}

    return {
        "connected": True,
        "connection": descriptor.redacted(),
        "metadata": request.state.session.get("connection_metadata"),
    }


@router.post("/validate")
async def validate_connection(
    body: ConnectionValidateRequest,
    manager: ServiceManager = Depends(get_service_manager),
) -> dict[str, Any]:
    """Dry-run the connection string pipeline without storing anything."""
    result = manager.connection_service.validate_connection_string(body.connection_string)
    data = result.to_dict()
    if result.descriptor is not None:
        # Echo a redacted form only; the sanitized string carries the password
        data["sanitized"] = result.descriptor.redacted()
    return data
