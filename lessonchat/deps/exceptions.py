"""
Custom exceptions for the chat pipeline
"""

from typing import Any, Dict, Optional


class ChatPipelineError(Exception):
    """Base exception for errors surfaced to API callers with a machine-readable code"""

    code = "INTERNAL_ERROR"
    status_code = 500
    default_message = "An internal error occurred"

    def __init__(self, message: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
        self.message = message or self.default_message
        self.details = details or {}
        super().__init__(self.message)


class AdmissionError(ChatPipelineError):
    """Request refused before any expensive downstream call"""
    pass


class RateLimitedError(AdmissionError):
    """Raised when a learner or tenant exceeds a rate window"""

    code = "RATE_LIMITED"
    status_code = 429
    default_message = "Too many requests. Please wait before sending another message."

    def __init__(self, retry_after: int, scope: str, message: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
        self.retry_after = max(1, int(retry_after))
        self.scope = scope
        merged = {"scope": scope}
        merged.update(details or {})
        super().__init__(message, merged)


class BudgetExceededError(AdmissionError):
    """Raised when the tenant's monthly budget is used up"""

    code = "BUDGET_EXCEEDED"
    status_code = 402
    default_message = "The monthly usage budget for this course has been exceeded."

    def __init__(self, status, message: Optional[str] = None):
        self.status = status
        super().__init__(message, {
            "used_usd": round(status.used_usd, 4),
            "limit_usd": status.limit_usd,
            "warning_level": status.warning_level.value,
        })


class SessionInvalidError(ChatPipelineError):
    """Raised when the chat session is missing or no longer usable"""

    code = "SESSION_INVALID"
    status_code = 404
    default_message = "Chat session not found or no longer active."


class RetrievalError(ChatPipelineError):
    """Embedding or vector search failure; the orchestrator recovers from it locally"""

    code = "RETRIEVAL_ERROR"
    status_code = 503
    default_message = "Content search is temporarily unavailable."


class ProviderError(ChatPipelineError):
    """LLM provider call failure"""

    code = "PROVIDER_ERROR"
    status_code = 502
    default_message = "The assistant could not generate an answer. Please try again."

    def __init__(self, message: Optional[str] = None, retriable: bool = False, details: Optional[Dict[str, Any]] = None):
        self.retriable = retriable
        super().__init__(message, details)


class ProviderTimeoutError(ProviderError):
    """Provider did not respond within the first-byte or total deadline"""

    def __init__(self, message: Optional[str] = None):
        super().__init__(message or "LLM provider timed out", retriable=True)


class ProviderAuthError(ProviderError):
    """Base exception for LLM provider authentication errors"""

    def __init__(self, message: Optional[str] = None):
        super().__init__(message, retriable=False)


class MissingAPIKeyError(ProviderAuthError):
    """Raised when the LLM API key is missing or empty"""

    def __init__(self, message: str = "LLM API key is required. Please configure LLM_API_KEY environment variable or Settings.llm_api_key"):
        super().__init__(message)


class InvalidAPIKeyError(ProviderAuthError):
    """Raised when the LLM API key is invalid or authentication fails"""

    def __init__(self, message: str = "LLM API key is invalid or authentication failed. Please verify your API key configuration"):
        super().__init__(message)


class PersistenceError(ChatPipelineError):
    """Storage write failure after a successful generation"""

    code = "PERSISTENCE_ERROR"
    status_code = 500
    default_message = "The conversation could not be saved."


class ResourceNotFoundError(ChatPipelineError):
    """Raised when a tenant, learner or other referenced record does not exist"""

    code = "NOT_FOUND"
    status_code = 404
    default_message = "The requested resource was not found."
