"""
Domain Errors

Exception hierarchy for the debugging orchestrator. Every error carries a
stable ``code`` matching its taxonomy name so that results, logs and API
responses can refer to failures without depending on class names.

Layers:
- Tool registry: ToolDisabled, ToolUnavailable
- Sandbox: UnsupportedLanguage, SandboxTimeout, IsolationUnavailable
- Scenario agent: ModelProtocolError, BudgetExceeded
- Orchestrator: SessionNotFound, InvalidTransition
"""


class DebugForceError(Exception):
    """Base class for all debugforce errors."""

    code = "DebugForceError"

    def __init__(self, message: str = ""):
        super().__init__(message or self.code)
        self.message = message or self.code


class ToolDisabledError(DebugForceError):
    """Tool server is marked disabled in configuration."""

    code = "ToolDisabled"


class ToolUnavailableError(DebugForceError):
    """Tool server could not be reached (after one reconnect attempt)."""

    code = "ToolUnavailable"


class UnsupportedLanguageError(DebugForceError):
    """Sandbox request names a language outside the supported set."""

    code = "UnsupportedLanguage"


class SandboxTimeoutError(DebugForceError):
    code = "SandboxTimeout"


class IsolationUnavailableError(DebugForceError):
    """Strict isolation was required but no isolation engine works on this host."""

    code = "IsolationUnavailable"


class ModelProtocolError(DebugForceError):
    """Model kept producing output the agent cannot act on."""

    code = "ModelProtocolError"


class BudgetExceededError(DebugForceError):
    code = "BudgetExceeded"


class SessionNotFoundError(DebugForceError):
    code = "SessionNotFound"

    def __init__(self, session_id: str):
        super().__init__(f"Session not found: {session_id}")
        self.session_id = session_id


class InvalidTransitionError(DebugForceError):
    """Requested state change would move a session or scenario backwards."""

    code = "InvalidTransition"


class ProvisioningError(DebugForceError):
    """Environment provisioner could not produce a runtime for a language."""

    code = "ProvisioningFailed"
