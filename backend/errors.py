"""Error taxonomy for the server manager.

Every error carries a machine-stable ``kind`` and the HTTP status the API
answers with. Route handlers never build error bodies themselves; the handler
registered in ``app.py`` renders any ``ServerManagerError`` as::

    {"error": "<kind>", "message": "<human readable>"}
"""

from typing import Any, Dict, Optional


class ServerManagerError(Exception):
    kind = "RuntimeFailure"
    status_code = 500

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> dict:
        body: dict = {"error": self.kind, "message": self.message}
        if self.details:
            body["details"] = self.details
        return body


class InvalidInput(ServerManagerError):
    """Client input rejected before any runtime call was issued."""

    kind = "InvalidInput"
    status_code = 400


class InvalidName(InvalidInput):
    kind = "InvalidName"


class InvalidPort(InvalidInput):
    kind = "InvalidPort"


class MissingImage(InvalidInput):
    kind = "MissingImage"


class NotFound(ServerManagerError):
    kind = "NotFound"
    status_code = 404

    def __init__(self, name: str, what: str = "Server"):
        self.name = name
        super().__init__(f"{what} '{name}' not found")


class RuntimeFailure(ServerManagerError):
    """The container runtime rejected or failed an operation.

    The runtime's own message is passed through untouched.
    """

    kind = "RuntimeFailure"
    status_code = 500

    def __init__(self, message: str, original_error: Optional[Exception] = None):
        self.original_error = original_error
        super().__init__(message)


class PartialFailure(ServerManagerError):
    """A recreate removed the old container but could not bring up the new one.

    The server is absent; its data directory on the host is untouched.
    """

    kind = "PartialFailure"
    status_code = 500

    def __init__(self, name: str, message: str, data_path: Optional[str] = None, phase: Optional[str] = None):
        self.name = name
        self.data_path = data_path
        details: Dict[str, Any] = {"name": name}
        if data_path:
            details["data_path"] = data_path
        if phase:
            details["phase"] = phase
        super().__init__(message, details)
