"""
Custom Exceptions for the Pilot sandbox orchestrator
====================================================

Three families matter to callers:
1. Not-found errors: an operation addressed an unknown session, sandbox or
   execution. Always reported to the immediate caller (HTTP 404).
2. Sandbox errors: the container runtime refused or failed an operation.
3. Setup errors: a fatal stage of repository setup failed.

Usage:
    from pilot.core.exceptions import SandboxNotFoundError

    if session_id not in self._sandboxes:
        raise SandboxNotFoundError(session_id)
"""

from typing import Optional, Any, Dict


class PilotError(Exception):
    """Base exception for all orchestrator errors"""

    def __init__(
        self,
        message: str,
        code: str = "INTERNAL_ERROR",
        details: Optional[Dict[str, Any]] = None
    ):
        self.message = message
        self.code = code
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code,
            "message": self.message,
            "details": self.details
        }


# ============================================
# Resource Not Found Errors
# ============================================

class ResourceNotFoundError(PilotError):
    """Base class for not found errors"""

    def __init__(self, resource_type: str, resource_id: str):
        super().__init__(
            f"{resource_type} not found: {resource_id}",
            code=f"{resource_type.upper()}_NOT_FOUND",
            details={"resource_type": resource_type, "resource_id": resource_id}
        )


class SessionNotFoundError(ResourceNotFoundError):
    """Session not in the registry"""

    def __init__(self, session_id: str):
        super().__init__("Session", session_id)


class SandboxNotFoundError(ResourceNotFoundError):
    """No live sandbox cached for the session"""

    def __init__(self, session_id: str):
        super().__init__("Sandbox", session_id)


class SandboxFileNotFoundError(ResourceNotFoundError):
    """Path does not exist inside the sandbox"""

    def __init__(self, path: str, session_id: str = ""):
        super().__init__("File", path)
        self.details["session_id"] = session_id


class ExecutionNotFoundError(ResourceNotFoundError):
    """Progress execution unknown or already expired"""

    def __init__(self, execution_id: str):
        super().__init__("Execution", execution_id)


# ============================================
# Validation Errors
# ============================================

class ValidationError(PilotError):
    """Input validation failed"""

    def __init__(self, message: str, field: Optional[str] = None):
        details = {"field": field} if field else {}
        super().__init__(message, code="VALIDATION_ERROR", details=details)


class InvalidRepositoryUrlError(ValidationError):
    """Repository URL is not a recognizable GitHub URL"""

    def __init__(self, repo_url: str):
        super().__init__(f"Invalid GitHub repository URL: {repo_url}", field="repo_url")


class InvalidStateTransitionError(PilotError):
    """Build status change not allowed by the session state machine"""

    def __init__(self, session_id: str, current: str, requested: str):
        super().__init__(
            f"Invalid status transition for {session_id}: {current} -> {requested}",
            code="INVALID_STATE_TRANSITION",
            details={"session_id": session_id, "from": current, "to": requested}
        )


# ============================================
# Sandbox / Container Runtime Errors
# ============================================

class SandboxError(PilotError):
    """Container runtime operation failed"""

    def __init__(self, message: str, code: str = "SANDBOX_ERROR",
                 session_id: Optional[str] = None):
        details = {"session_id": session_id} if session_id else {}
        super().__init__(message, code=code, details=details)


class DockerUnavailableError(SandboxError):
    """Docker daemon could not be reached"""

    def __init__(self, message: str = "Docker daemon is not available"):
        super().__init__(message, code="DOCKER_UNAVAILABLE")


class SandboxCreationError(SandboxError):
    """Sandbox could not be started or did not reach the running state"""

    def __init__(self, message: str, session_id: Optional[str] = None):
        super().__init__(message, code="SANDBOX_CREATION_FAILED", session_id=session_id)


class PortUnavailableError(SandboxError):
    """Requested host port is already bound on the host"""

    def __init__(self, port: int, session_id: Optional[str] = None):
        super().__init__(f"Host port {port} is already allocated",
                         code="PORT_UNAVAILABLE", session_id=session_id)
        self.port = port
        self.details["port"] = port


class CommandExecutionError(SandboxError):
    """Command could not be executed inside the sandbox"""

    def __init__(self, message: str, session_id: Optional[str] = None):
        super().__init__(message, code="COMMAND_EXECUTION_FAILED", session_id=session_id)


class FileTransferError(SandboxError):
    """Archive transfer into or out of the sandbox failed"""

    def __init__(self, message: str, session_id: Optional[str] = None):
        super().__init__(message, code="FILE_TRANSFER_FAILED", session_id=session_id)


# ============================================
# Setup & Injection Errors
# ============================================

class SetupError(PilotError):
    """A fatal repository setup stage failed"""

    def __init__(self, message: str, stage: Optional[str] = None):
        details = {"stage": stage} if stage else {}
        super().__init__(message, code="SETUP_FAILED", details=details)
        self.stage = stage


class InjectionError(PilotError):
    """Picker script could not be injected into the repository"""

    def __init__(self, message: str):
        super().__init__(message, code="INJECTION_FAILED")
