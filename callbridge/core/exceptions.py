"""
Custom Exceptions for CallBridge
Provides structured error handling across the application
"""

from typing import Optional, Dict, Any


class CallBridgeException(Exception):
    """Base exception for all CallBridge errors"""

    def __init__(
        self,
        message: str,
        error_code: str = "UNKNOWN_ERROR",
        details: Optional[Dict[str, Any]] = None,
        status_code: int = 500,
        request_id: Optional[str] = None
    ):
        self.message = message
        self.error_code = error_code
        self.details = details or {}
        self.status_code = status_code
        self.request_id = request_id
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to the standard error envelope"""
        body: Dict[str, Any] = {"error": self.message}
        if self.details:
            body["details"] = self.details
        if self.request_id:
            body["requestId"] = self.request_id
        return body


# Validation Exceptions
class ValidationError(CallBridgeException):
    """Raised when input validation fails"""

    def __init__(self, message: str, field: Optional[str] = None, request_id: Optional[str] = None):
        super().__init__(
            message=message,
            error_code="VALIDATION_ERROR",
            details={"field": field} if field else {},
            status_code=400,
            request_id=request_id
        )


class InvalidPhoneNumberError(ValidationError):
    """Raised when phone number is not E.164"""

    def __init__(self, phone_number: str, request_id: Optional[str] = None):
        super().__init__(
            message="Phone number must be in E.164 format (e.g., +12125551234)",
            field="phone",
            request_id=request_id
        )
        self.error_code = "INVALID_PHONE_NUMBER"
        self.details["phone_number"] = phone_number


# Tenant Exceptions
class TenantError(CallBridgeException):
    """Base exception for tenant-related errors"""
    pass


class TenantNotFoundError(TenantError):
    """Raised when tenant is not found"""

    def __init__(self, tenant_id: str, request_id: Optional[str] = None):
        super().__init__(
            message="Tenant not found",
            error_code="TENANT_NOT_FOUND",
            details={"tenant_id": tenant_id},
            status_code=404,
            request_id=request_id
        )


class TenantInactiveError(TenantError):
    """Raised when tenant is not active"""

    def __init__(self, tenant_id: str, status: str, request_id: Optional[str] = None):
        super().__init__(
            message=f"Tenant is not active (status: {status})",
            error_code="TENANT_INACTIVE",
            details={"tenant_id": tenant_id},
            status_code=403,
            request_id=request_id
        )


class ConflictError(CallBridgeException):
    """Raised when a write would violate a uniqueness rule"""

    def __init__(self, message: str, details: Optional[Dict] = None, request_id: Optional[str] = None):
        super().__init__(
            message=message,
            error_code="CONFLICT",
            details=details,
            status_code=409,
            request_id=request_id
        )


class AgentConflictError(ConflictError):
    """Raised when an agent id or phone number is already taken within a tenant"""

    def __init__(self, message: str, field: str, value: str):
        super().__init__(message=message, details={"field": field, "value": value})
        self.error_code = "AGENT_CONFLICT"


class AgentNotFoundError(TenantError):
    """Raised when an additional agent is not found"""

    def __init__(self, tenant_id: str, agent_id: str):
        super().__init__(
            message=f"Agent not found: {agent_id}",
            error_code="AGENT_NOT_FOUND",
            details={"tenant_id": tenant_id, "agent_id": agent_id},
            status_code=404
        )


class PrimaryAgentError(TenantError):
    """Raised on attempts to modify the primary agent through the agent endpoints"""

    def __init__(self, message: str):
        super().__init__(message=message, error_code="PRIMARY_AGENT", status_code=400)


# Call Exceptions
class CallNotFoundError(CallBridgeException):
    """Raised when a call is not found"""

    def __init__(self, call_sid: str):
        super().__init__(
            message=f"Call not found: {call_sid}",
            error_code="CALL_NOT_FOUND",
            details={"call_sid": call_sid},
            status_code=404
        )


class ContactNotFoundError(CallBridgeException):
    """Raised when a CRM contact cannot be found"""

    def __init__(self, phone: str, request_id: Optional[str] = None):
        super().__init__(
            message="Contact not found",
            error_code="CONTACT_NOT_FOUND",
            details={"phone": phone},
            status_code=404,
            request_id=request_id
        )


# Service Exceptions
class ServiceError(CallBridgeException):
    """Base exception for external service errors"""
    pass


# Carrier error codes that indicate a caller mistake rather than a carrier fault
TWILIO_CLIENT_ERRORS = {
    21211: ("Invalid 'To' phone number", "Check the phone number format and try again"),
    21214: ("Invalid 'From' phone number", "Verify the Twilio phone number is active and properly configured"),
}


class TwilioServiceError(ServiceError):
    """Raised when Twilio service fails"""

    def __init__(self, message: str, twilio_code: Optional[int] = None, request_id: Optional[str] = None):
        status_code = 502
        details: Dict[str, Any] = {"twilio_code": twilio_code} if twilio_code else {}
        if twilio_code in TWILIO_CLIENT_ERRORS:
            details["reason"] = message
            message, details["resolution"] = TWILIO_CLIENT_ERRORS[twilio_code]
            status_code = 400
        else:
            message = f"Twilio error: {message}"
        super().__init__(
            message=message,
            error_code="TWILIO_ERROR",
            details=details,
            status_code=status_code,
            request_id=request_id
        )


class VoiceServiceError(ServiceError):
    """Raised when ElevenLabs service fails"""

    def __init__(self, message: str, upstream_status: Optional[int] = None):
        super().__init__(
            message=f"ElevenLabs error: {message}",
            error_code="VOICE_SERVICE_ERROR",
            details={"status_code": upstream_status} if upstream_status else {},
            status_code=502
        )


class CRMServiceError(ServiceError):
    """Raised when a GoHighLevel API call fails"""

    def __init__(self, message: str, upstream_status: Optional[int] = None, body: Any = None):
        details: Dict[str, Any] = {}
        if upstream_status:
            details["status_code"] = upstream_status
        if body:
            details["body"] = body
        super().__init__(
            message=message,
            error_code="CRM_ERROR",
            details=details,
            status_code=502
        )
        self.upstream_status = upstream_status
        self.body = body


class CRMAuthError(CRMServiceError):
    """Raised when GoHighLevel rejects the tenant's credentials"""

    def __init__(self, upstream_status: int):
        super().__init__(
            message="GHL authentication failed. The integration may need to be re-authorized.",
            upstream_status=upstream_status
        )
        self.error_code = "CRM_REAUTHORIZATION_NEEDED"
        self.status_code = 401


class CRMConflictError(CRMServiceError):
    """Raised when the requested appointment slot is taken"""

    def __init__(self, body: Any = None):
        super().__init__(message="The requested time slot is not available", body=body)
        self.error_code = "SLOT_UNAVAILABLE"
        self.status_code = 409


class TokenRefreshError(CRMServiceError):
    """Raised when the CRM access token cannot be refreshed"""

    def __init__(self, message: str):
        super().__init__(message=f"Token refresh failed: {message}")
        self.error_code = "TOKEN_REFRESH_FAILED"


# Relay Exceptions
class InvalidTransitionError(CallBridgeException):
    """Raised when a relay event is not allowed in the current state"""

    def __init__(self, state: str, event: str):
        super().__init__(
            message=f"Event {event} not allowed in state {state}",
            error_code="INVALID_TRANSITION",
            details={"state": state, "event": event},
            status_code=409
        )
        self.state = state
        self.event = event
