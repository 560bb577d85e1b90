"""
Rescue Ops - Exception Hierarchy

Only configuration/programming errors and storage conflicts are raised.
Domain decisions (denials, invalid transitions, break-glass or
two-person requirements, eligibility blockers) are returned as result
values by the services.
"""


class RescueOpsError(Exception):
    """Base exception for the engine."""

    def __init__(self, message: str = "An error occurred"):
        self.message = message
        super().__init__(self.message)


class ConfigurationError(RescueOpsError):
    """Static configuration is invalid. Fatal at load time."""
    pass


class UnknownRoleError(ConfigurationError):
    """A role id is not present in the role catalog."""
    pass


class UnknownPermissionError(ConfigurationError):
    """A permission id is not part of the permission vocabulary."""
    pass


class ReportingCycleError(ConfigurationError):
    """The reportsTo graph contains a cycle."""
    pass


class TransitionTableError(ConfigurationError):
    """The case transition table is malformed."""
    pass


class StorageError(RescueOpsError):
    """Base class for repository failures."""
    pass


class ConflictError(StorageError):
    """Optimistic-concurrency version mismatch or duplicate record id."""
    pass


class RecordNotFoundError(StorageError):
    """The requested record does not exist."""
    pass
