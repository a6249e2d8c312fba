"""Security services: tokens, sessions and connection strings."""

from mongogui.services.auth import AuthService, TokenPair
from mongogui.services.connection import ConnectionService, ConnectionValidationResult
from mongogui.services.manager import ServiceManager, get_service_manager
from mongogui.services.session import SessionService

__all__ = [
    "AuthService",
    "ConnectionService",
    "ConnectionValidationResult",
    "ServiceManager",
    "SessionService",
    "TokenPair",
    "get_service_manager",
]
