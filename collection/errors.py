"""
Typed failures of the collection core.

Every failure carries a stable ``code`` (used by the bot to pick a localized
message) and a ``kind`` from the error taxonomy: conflict, not_found,
validation, security, forbidden, unavailable.
"""


class CollectionError(Exception):
    code = "collection_error"
    kind = "conflict"

    def __init__(self, message: str | None = None, **details):
        self.details = details
        super().__init__(message or self.code)


# --- Conflict ---

class AlreadyActive(CollectionError):
    code = "already_active"


class SessionNotActive(CollectionError):
    code = "not_active"


class DuplicateType(CollectionError):
    code = "duplicate_type"


class WrongStatus(CollectionError):
    code = "wrong_status"


class PriorStageIncomplete(CollectionError):
    code = "prior_stage_incomplete"


# --- Not found ---

class NotFound(CollectionError):
    code = "not_found"
    kind = "not_found"


class SessionNotFound(NotFound):
    code = "session_not_found"


class HandoffNotFound(NotFound):
    code = "handoff_not_found"


class PlantNotFound(NotFound):
    code = "plant_not_found"


class UnknownContainer(NotFound):
    """The container is not part of the session's selected containers."""
    code = "unknown_container"


# --- Validation ---

class ValidationFailed(CollectionError):
    code = "validation"
    kind = "validation"


class InvalidContainer(ValidationFailed):
    """One or more container refs are unknown to the container registry."""
    code = "invalid_container"


class InvalidContainers(ValidationFailed):
    """Handoff containers that were never visited in the session."""
    code = "invalid_containers"


class EmptyContainers(ValidationFailed):
    code = "empty_containers"


class InvalidLocation(ValidationFailed):
    code = "invalid_location"


class InvalidReceiver(ValidationFailed):
    code = "invalid_receiver"


# --- Security / access ---

class InvalidToken(CollectionError):
    code = "invalid_token"
    kind = "security"


class Forbidden(CollectionError):
    code = "forbidden"
    kind = "forbidden"


# --- Infrastructure ---

class Unavailable(CollectionError):
    """Transient storage failure; the whole call may be retried."""
    code = "unavailable"
    kind = "unavailable"
