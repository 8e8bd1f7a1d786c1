"""Custom exceptions for Verifolio Chat.

Every error the orchestrator can surface carries the HTTP status it maps to
and a localized message that is safe to show to the end user. Internal
detail stays in ``str(exc)`` and is only ever logged.
"""

from typing import Any


GENERIC_USER_MESSAGE = "Une erreur est survenue. Veuillez réessayer."


class VerifolioChatError(Exception):
    """Base exception for Verifolio Chat."""

    http_status: int = 500
    user_message: str = GENERIC_USER_MESSAGE

    def __init__(self, message: str, *, user_message: str | None = None):
        super().__init__(message)
        if user_message is not None:
            self.user_message = user_message
        # Results of tool calls completed before the failure, if any.
        self.partial_results: list[Any] = []


class ConfigurationError(VerifolioChatError):
    """Configuration-related errors."""

    pass


# ── Validation (400) ─────────────────────────────────────────────────


class ValidationError(VerifolioChatError):
    """Malformed request, tool arguments or tool result."""

    http_status = 400
    user_message = "Requête invalide"

    def __init__(self, field: str, reason: str, *, user_message: str | None = None):
        super().__init__(f"{field}: {reason}" if field else reason, user_message=user_message)
        self.field = field
        self.reason = reason


class RequestValidationError(ValidationError):
    """Inbound chat request failed validation."""

    pass


class InvalidToolArguments(ValidationError):
    """Tool call arguments do not match the tool's contract."""

    http_status = 500
    user_message = GENERIC_USER_MESSAGE

    def __init__(self, tool_name: str, reason: str):
        super().__init__(f"{tool_name}.arguments", reason)
        self.tool_name = tool_name


class InvalidToolResult(ValidationError):
    """Tool returned a payload that is not ``{success, message, data?}``."""

    http_status = 500
    user_message = GENERIC_USER_MESSAGE

    def __init__(self, tool_name: str, reason: str):
        super().__init__(f"{tool_name}.result", reason)
        self.tool_name = tool_name


# ── Permission (403) ─────────────────────────────────────────────────


class ToolPermissionError(VerifolioChatError):
    """Tool call stopped by the mode policy."""

    http_status = 403

    def __init__(self, mode: str, tool_name: str, message: str):
        super().__init__(message, user_message=message)
        self.mode = mode
        self.tool_name = tool_name


class ConfirmationRequiredError(ToolPermissionError):
    """Mutating tool needs an explicit user confirmation."""

    def __init__(self, mode: str, tool_name: str, tool_call_id: str, arguments: dict[str, Any]):
        super().__init__(
            mode,
            tool_name,
            f'L\'action "{tool_name}" nécessite une confirmation en mode {mode.upper()}.',
        )
        self.tool_call_id = tool_call_id
        self.arguments = arguments


class ForbiddenToolError(ToolPermissionError):
    """Tool is not allowed at all in the current mode."""

    def __init__(self, mode: str, tool_name: str):
        super().__init__(
            mode,
            tool_name,
            f'L\'action "{tool_name}" n\'est pas autorisée en mode {mode.upper()}.',
        )


# ── Upstream model (401/429/500) ─────────────────────────────────────


class UpstreamError(VerifolioChatError):
    """Upstream model provider answered with an error or an empty reply."""

    user_message = "Erreur de communication avec l'assistant"

    def __init__(self, message: str, status_code: int | None = None, upstream_message: str | None = None):
        super().__init__(message)
        self.status_code = status_code
        self.upstream_message = upstream_message
        if status_code == 429:
            self.http_status = 429
            self.user_message = "Trop de requêtes. Veuillez patienter quelques secondes."
        elif status_code == 401:
            self.http_status = 401
            self.user_message = "Clé API du fournisseur invalide."
        elif message == "empty reply":
            self.user_message = "Réponse vide de l'assistant. Veuillez réessayer."


class NetworkError(VerifolioChatError):
    """Transport-level failure reaching the upstream provider."""

    http_status = 503
    user_message = "Problème de connexion. Vérifiez votre réseau et réessayez."


# ── Timeouts (504) ───────────────────────────────────────────────────


class ChatTimeoutError(VerifolioChatError):
    """Any timeout tier exceeded."""

    http_status = 504
    user_message = "L'assistant met trop de temps à répondre. Veuillez réessayer."

    def __init__(self, label: str, message: str | None = None):
        super().__init__(message or f"{label} timeout")
        self.label = label


class ModelTimeoutError(ChatTimeoutError):
    """A single upstream model call exceeded its timeout."""

    pass


class ToolTimeoutError(ChatTimeoutError):
    """A single tool call exceeded its timeout."""

    def __init__(self, tool_name: str, timeout_seconds: float):
        super().__init__(f"Tool {tool_name}", f"Tool {tool_name} timed out after {timeout_seconds:g}s")
        self.tool_name = tool_name


class BudgetExceededError(ChatTimeoutError):
    """The request-wide budget (time or round cap) is exhausted."""

    pass


# ── Tools (500) ──────────────────────────────────────────────────────


class ToolExecutionError(VerifolioChatError):
    """Tool execution failed."""

    def __init__(self, tool_name: str, message: str):
        super().__init__(f"Tool '{tool_name}' failed: {message}")
        self.tool_name = tool_name


class ToolNotFoundError(ToolExecutionError):
    """Tool not found in registry."""

    def __init__(self, tool_name: str):
        super().__init__(tool_name, "not registered")
