# clinicflow/exceptions.py
"""Error taxonomy shared by the entity store, the status engine and the services.

Caller-input problems (``ValidationError`` and its subclasses) are raised
before anything is written. Environment problems in batch storage calls are
reported through result records instead of being raised.
"""


class ClinicError(Exception):
    pass


class ValidationError(ClinicError):
    """Bad or missing field, unknown status, or an edit the record does not allow."""


class InvalidTransitionError(ValidationError):
    def __init__(self, entity_type: str, current: str, requested: str):
        self.entity_type = entity_type
        self.current = current
        self.requested = requested
        super().__init__(f"{entity_type} cannot move from '{current}' to '{requested}'")


class IndexOutOfRangeError(ValidationError):
    def __init__(self, index, size: int):
        self.index = index
        self.size = size
        super().__init__(f"Medication line index {index} is out of range (order has {size} lines)")


class NotFoundError(ClinicError):
    def __init__(self, entity_type: str, identifier):
        self.entity_type = entity_type
        self.identifier = identifier
        super().__init__(f"{entity_type} '{identifier}' not found")


class ConflictError(ClinicError):
    """The record was changed by someone else between read and write."""


class StorageIOError(ClinicError):
    pass


class RenderError(ClinicError):
    pass
