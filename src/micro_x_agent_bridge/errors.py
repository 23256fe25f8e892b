from __future__ import annotations


class BridgeError(Exception):
    """Base class for every error raised by the bus, bridge and session layers."""

    kind = "bridge_error"


class UnknownHandlerError(BridgeError):
    kind = "unknown_handler"

    def __init__(self, method: str):
        super().__init__(f"No handler registered for {method!r}")
        self.method = method


class HandlerConflictError(BridgeError):
    kind = "handler_conflict"

    def __init__(self, method: str):
        super().__init__(f"A handler is already registered for {method!r}")
        self.method = method


class TransportClosedError(BridgeError):
    kind = "transport_closed"

    def __init__(self, message: str = "Transport is closed"):
        super().__init__(message)


class SessionClosedError(BridgeError):
    kind = "closed_session"

    def __init__(self, session_id: str | None = None):
        if session_id:
            super().__init__(f"Session is closed: {session_id}")
        else:
            super().__init__("Session is closed")
        self.session_id = session_id


class SessionNotFoundError(BridgeError):
    kind = "session_not_found"

    def __init__(self, session_id: str):
        super().__init__(f"Session not found: {session_id}")
        self.session_id = session_id


class HandlerExecutionError(BridgeError):
    """A remote handler raised. ``cause_type`` names the original exception class."""

    kind = "handler_error"

    def __init__(self, method: str, message: str, cause_type: str | None = None):
        super().__init__(f"Handler {method!r} failed: {message}")
        self.method = method
        self.cause_message = message
        self.cause_type = cause_type


class RequestTimeoutError(BridgeError):
    kind = "request_timeout"

    def __init__(self, method: str, timeout: float):
        super().__init__(f"Request {method!r} timed out after {timeout:g}s")
        self.method = method
        self.timeout = timeout


def error_to_frame(ex: BaseException) -> dict:
    """Describe a handler failure for a failure-response frame."""
    if isinstance(ex, BridgeError) and not isinstance(ex, HandlerExecutionError):
        return {"kind": ex.kind, "message": str(ex), "cause": type(ex).__name__}
    return {"kind": HandlerExecutionError.kind, "message": str(ex), "cause": type(ex).__name__}


def error_from_frame(method: str, error: dict) -> BridgeError:
    """Rebuild the requester-side exception for a failure-response frame."""
    kind = error.get("kind", HandlerExecutionError.kind)
    message = str(error.get("message", ""))
    if kind == UnknownHandlerError.kind:
        return UnknownHandlerError(method)
    if kind == HandlerConflictError.kind:
        return HandlerConflictError(method)
    if kind == TransportClosedError.kind:
        return TransportClosedError(message or "Transport is closed")
    if kind == SessionClosedError.kind:
        err = SessionClosedError()
        err.args = (message,)
        return err
    if kind == SessionNotFoundError.kind:
        err = SessionNotFoundError("")
        err.args = (message,)
        return err
    return HandlerExecutionError(method, message, error.get("cause"))
