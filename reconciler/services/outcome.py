"""
Result-or-error values shared by the receipt services.

Expected failures are returned as ActionError instead of raised, so a router
can turn them into a JSON error body without catching anything.
"""
from dataclasses import dataclass

STATUS_BY_KIND = {
    "validation": 400,
    "permission": 403,
    "not_found": 404,
    "storage": 500,
    "fatal": 500,
}


@dataclass(frozen=True)
class ActionError:
    kind: str
    message: str

    @property
    def status_code(self) -> int:
        return STATUS_BY_KIND.get(self.kind, 500)


def validation_error(message: str) -> ActionError:
    return ActionError("validation", message)


def not_found(message: str) -> ActionError:
    return ActionError("not_found", message)


def permission_denied(message: str = "Insufficient permissions") -> ActionError:
    return ActionError("permission", message)


def is_error(result) -> bool:
    return isinstance(result, ActionError)


class AuditLogWriteError(Exception):
    """A transaction log row could not be persisted; the run must stop"""


class SafetyAbort(Exception):
    """A scheduled job hit a condition where continuing could double-process"""


class StorageError(Exception):
    """The receipt store rejected a save or delete"""


def from_validation_exception(exc) -> ActionError:
    """First pydantic error as a user-facing message"""
    errors = exc.errors()
    if not errors:
        return validation_error("Invalid data")
    message = str(errors[0].get("msg", "Invalid data"))
    if message.startswith("Value error, "):
        message = message[len("Value error, "):]
    return validation_error(message)
