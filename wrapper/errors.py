"""
Error taxonomy for the wrapper.

Every handler-level failure is expressed as one of these; the exception
handlers in main.py render them as structured JSON for API clients or as a
styled HTML page for browsers.
"""

from typing import Optional


class WrapperError(Exception):
    status = 500
    code = "INTERNAL_ERROR"
    message = "Unexpected internal error."
    action = "Retry once. If it fails again, check server logs."
    title = "Server Error"

    def __init__(
        self,
        message: Optional[str] = None,
        *,
        code: Optional[str] = None,
        action: Optional[str] = None,
        details: Optional[dict] = None,
        status: Optional[int] = None,
    ):
        super().__init__(message or self.message)
        if message:
            self.message = message
        if code:
            self.code = code
        if action is not None:
            self.action = action
        if status:
            self.status = status
        self.details = details

    def to_dict(self) -> dict:
        return {
            "ok": False,
            "error": {
                "code": self.code,
                "message": self.message,
                "action": self.action,
                "details": self.details,
            },
        }


class AuthenticationRequired(WrapperError):
    status = 401
    code = "AUTHENTICATION_REQUIRED"
    message = "Not authenticated"
    action = "Sign in at /auth/login."
    title = "Authentication Required"


class RateLimited(WrapperError):
    status = 429
    code = "RATE_LIMITED"
    message = "Too many attempts. Please try again later."
    action = "Wait for the retry window to elapse."
    title = "Too Many Requests"

    def __init__(self, retry_after: int, message: Optional[str] = None):
        super().__init__(message, details={"retryAfter": retry_after})
        self.retry_after = retry_after


class PreconditionFailed(WrapperError):
    status = 400
    code = "PRECONDITION_FAILED"
    message = "Cannot start onboarding due to missing required setup input."
    action = "Run Preflight, fix blockers, and retry deployment."
    title = "Request Error"


class OnboardInProgress(WrapperError):
    status = 409
    code = "ONBOARD_IN_PROGRESS"
    message = "Onboarding is already running."
    action = "Wait for the current run to finish."
    title = "Request Error"


class ProviderAuthFailed(WrapperError):
    code = "PROVIDER_AUTH_FAILED"
    message = "Provider authentication failed during onboarding."
    action = "Verify provider selection and API key, then run Preflight again."


class StoragePermissionError(WrapperError):
    code = "STORAGE_PERMISSION_ERROR"
    message = "OpenClaw could not write required files."
    action = "Check OPENCLAW_STATE_DIR/OPENCLAW_WORKSPACE_DIR and volume mount permissions."


class OnboardTimeout(WrapperError):
    code = "ONBOARD_TIMEOUT"
    message = "Onboarding timed out before completion."
    action = "Retry once; if it repeats, check network/provider connectivity and logs."


class OnboardFailed(WrapperError):
    code = "ONBOARD_FAILED"
    message = "OpenClaw onboarding did not complete successfully."
    action = "Review setup output log, fix highlighted issues, and retry deployment."


ONBOARD_ERRORS = {
    cls.code: cls
    for cls in (ProviderAuthFailed, StoragePermissionError, OnboardTimeout, OnboardFailed)
}


def onboard_error(code: str, message: str, action: str, details: Optional[dict] = None) -> WrapperError:
    """Build the typed error for a classified onboarding failure.

    Codes coming from custom classification rules fall back to OnboardFailed
    but keep their own code string.
    """
    cls = ONBOARD_ERRORS.get(code, OnboardFailed)
    return cls(message, code=code, action=action, details=details)


class GatewayUnavailable(WrapperError):
    status = 502
    code = "GATEWAY_UNAVAILABLE"
    message = "The gateway is not responding. Please try again."
    action = "The page retries automatically; check /setup if it persists."
    title = "Bad Gateway"

    def __init__(self, message: Optional[str] = None, *, status: int = 502, title: Optional[str] = None,
                 code: Optional[str] = None, details: Optional[dict] = None):
        super().__init__(message, code=code, status=status, details=details)
        if title:
            self.title = title


class GatewayNotConfigured(WrapperError):
    status = 503
    code = "GATEWAY_NOT_CONFIGURED"
    message = "Gateway cannot start: not configured"
    action = "Complete onboarding at /setup."
    title = "Not Configured"


class InternalError(WrapperError):
    code = "SETUP_INTERNAL_ERROR"
    message = "Unexpected internal error while running setup."
    action = "Retry setup once. If it fails again, check server logs and run diagnostics from the Tools tab."
