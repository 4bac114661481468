"""Core module for configuration, settings, and shared utilities"""

from .config import settings, get_settings, Settings
from .logging import setup_logging, get_logger
from .exceptions import (
    CallBridgeException,
    ValidationError,
    InvalidPhoneNumberError,
    TenantError,
    TenantNotFoundError,
    TenantInactiveError,
    ConflictError,
    AgentConflictError,
    AgentNotFoundError,
    PrimaryAgentError,
    CallNotFoundError,
    ContactNotFoundError,
    ServiceError,
    TwilioServiceError,
    VoiceServiceError,
    CRMServiceError,
    CRMAuthError,
    CRMConflictError,
    TokenRefreshError,
    InvalidTransitionError
)

__all__ = [
    # Config
    "settings",
    "get_settings",
    "Settings",
    # Logging
    "setup_logging",
    "get_logger",
    # Exceptions
    "CallBridgeException",
    "ValidationError",
    "InvalidPhoneNumberError",
    "TenantError",
    "TenantNotFoundError",
    "TenantInactiveError",
    "ConflictError",
    "AgentConflictError",
    "AgentNotFoundError",
    "PrimaryAgentError",
    "CallNotFoundError",
    "ContactNotFoundError",
    "ServiceError",
    "TwilioServiceError",
    "VoiceServiceError",
    "CRMServiceError",
    "CRMAuthError",
    "CRMConflictError",
    "TokenRefreshError",
    "InvalidTransitionError"
]
