"""
Custom exceptions for scan agent error handling
"""

from enum import Enum
from typing import Optional


class FailureReason(Enum):
    """Terminal failure classes of an automation session"""
    DOWNLOAD_TIMEOUT = "DownloadTimeout"
    DOWNLOAD_ERROR = "DownloadError"
    AUTH_INJECTION_ERROR = "AuthInjectionError"
    NAVIGATION_TIMEOUT = "NavigationTimeout"
    UPLOAD_ERROR = "UploadError"
    RESULT_TIMEOUT = "ResultTimeout"
    REPORTING_ERROR = "ReportingError"
    UNEXPECTED_ERROR = "UnexpectedError"


class AutomationError(Exception):
    """Base exception class for all agent errors"""

    def __init__(self, message: str, error_code: Optional[str] = None, details: Optional[dict] = None):
        super().__init__(message)
        self.message = message
        self.error_code = error_code or "AUTOMATION_ERROR"
        self.details = details or {}

    def __str__(self):
        if self.details:
            return f"{self.message} (Code: {self.error_code}, Details: {self.details})"
        return f"{self.message} (Code: {self.error_code})"


class ConfigurationError(AutomationError):
    """Exception raised when agent settings or credentials are missing or invalid"""

    def __init__(self, message: str, setting: Optional[str] = None):
        details = {"setting": setting} if setting else None
        super().__init__(message, "CONFIGURATION_ERROR", details)
        self.setting = setting


class AuthError(AutomationError):
    """Exception raised when the work queue token is missing or rejected"""

    def __init__(self, message: str = "Work queue token not configured", status_code: Optional[int] = None):
        details = {"status_code": status_code} if status_code else None
        super().__init__(message, "AUTH_ERROR", details)
        self.status_code = status_code


class NetworkError(AutomationError):
    """Exception raised when network-related errors occur"""

    def __init__(self, message: str, url: Optional[str] = None, status_code: Optional[int] = None):
        error_details = {}
        if url:
            error_details["url"] = url
        if status_code:
            error_details["status_code"] = status_code

        super().__init__(message, "NETWORK_ERROR", error_details)
        self.url = url
        self.status_code = status_code


class QueueApiError(AutomationError):
    """Exception raised when the work queue rejects a request"""

    def __init__(self, action: str, status_code: int, reason: Optional[str] = None):
        message = f"Work queue action '{action}' failed with status {status_code}"
        if reason:
            message += f": {reason}"

        details = {
            "action": action,
            "status_code": status_code,
            "reason": reason
        }
        super().__init__(message, "QUEUE_API_ERROR", details)
        self.action = action
        self.status_code = status_code
        self.reason = reason


class AlreadyClaimedError(AutomationError):
    """Exception raised when another agent holds the lease on a job"""

    def __init__(self, job_id: str, holder: Optional[str] = None):
        message = f"Job {job_id} is already claimed"
        if holder:
            message += f" by {holder}"

        super().__init__(message, "ALREADY_CLAIMED", {"job_id": job_id, "holder": holder})
        self.job_id = job_id
        self.holder = holder


class CookieParseError(AutomationError):
    """Exception raised when no cookies can be extracted from imported text"""

    def __init__(self, reason: str):
        super().__init__(f"Could not parse cookies: {reason}", "COOKIE_PARSE_ERROR", {"reason": reason})
        self.reason = reason


class BrowserInitializationError(AutomationError):
    """Exception raised when browser initialization fails"""

    def __init__(self, message: str, backend: str = "unknown", details: Optional[dict] = None):
        super().__init__(message, "BROWSER_INIT_ERROR", details)
        self.backend = backend


class ElementNotFoundError(AutomationError):
    """Exception raised when a required element cannot be found on the page"""

    def __init__(self, selector: str, element_type: str = "element", timeout: Optional[int] = None):
        message = f"Could not find {element_type} with selector: {selector}"
        if timeout:
            message += f" (timeout: {timeout}s)"

        details = {
            "selector": selector,
            "element_type": element_type,
            "timeout": timeout
        }
        super().__init__(message, "ELEMENT_NOT_FOUND", details)
        self.selector = selector
        self.element_type = element_type
        self.timeout = timeout


class PageNavigationError(AutomationError):
    """Exception raised when page navigation fails"""

    def __init__(self, url: str, attempts: int = 1, last_error: Optional[str] = None):
        message = f"Failed to navigate to {url}"
        if attempts > 1:
            message += f" after {attempts} attempts"

        details = {
            "url": url,
            "attempts": attempts,
            "last_error": last_error
        }
        super().__init__(message, "NAVIGATION_ERROR", details)
        self.url = url
        self.attempts = attempts
        self.last_error = last_error


class FormInteractionError(AutomationError):
    """Exception raised when form interaction fails"""

    def __init__(self, action: str, field: str, details: Optional[dict] = None):
        message = f"Failed to {action} on field: {field}"
        error_details = {"action": action, "field": field}
        if details:
            error_details.update(details)

        super().__init__(message, "FORM_INTERACTION_ERROR", error_details)
        self.action = action
        self.field = field


class ReportingError(AutomationError):
    """Exception raised when results cannot be reported after bounded retries"""

    def __init__(self, job_id: str, attempts: int, last_error: Optional[str] = None):
        message = f"Failed to report results for job {job_id}"
        if attempts > 1:
            message += f" after {attempts} attempts"
        if last_error:
            message += f": {last_error}"

        details = {
            "job_id": job_id,
            "attempts": attempts,
            "last_error": last_error
        }
        super().__init__(message, "REPORTING_ERROR", details)
        self.job_id = job_id
        self.attempts = attempts
        self.last_error = last_error


class SessionFailure(AutomationError):
    """Terminal failure of an automation session, classified by reason"""

    def __init__(self, reason: FailureReason, message: str):
        super().__init__(message, reason.value)
        self.reason = reason

    def __str__(self):
        return f"{self.reason.value}: {self.message}"
