"""Custom exceptions for the cluster controller."""


class ClusterOpsError(Exception):
    """Base exception for all cluster controller errors."""

    def __init__(self, message: str, details: str = None):
        """Initialize the exception.

        Args:
            message: Main error message
            details: Additional details or suggestions
        """
        self.message = message
        self.details = details
        super().__init__(self.format_message())

    def format_message(self) -> str:
        """Format the complete error message.

        Returns:
            Formatted error message with details
        """
        if self.details:
            return f"{self.message}\n\nDetails: {self.details}"
        return self.message


class StoreError(ClusterOpsError):
    """Exception raised for resource store errors."""

    pass


class NotFoundError(StoreError):
    """Exception raised when a record does not exist."""

    pass


class ConflictError(StoreError):
    """Exception raised when a create or update loses against a concurrent writer."""

    pass


class InsufficientMachinesError(ClusterOpsError):
    """Exception raised when the machine pool cannot satisfy a role requirement."""

    pass


class MachineConflictError(InsufficientMachinesError):
    """Exception raised when a selected machine was claimed by another binding."""

    pass


class CredentialError(ClusterOpsError):
    """Exception raised for malformed or misplaced login credentials."""

    pass


class VolumeNotReadyError(ClusterOpsError):
    """Exception raised when the package volume is not bound yet."""

    pass


class WorkItemFailedError(ClusterOpsError):
    """Exception raised when a work item reaches its Failed condition."""

    pass


class ValidationError(ClusterOpsError):
    """Exception raised for validation errors."""

    pass


class ConfigurationError(ClusterOpsError):
    """Exception raised for configuration errors."""

    pass
