"""Exceptions raised by EdgeOne origin protection."""


class EdgeOneProtectionError(Exception):
    """Base exception for origin protection errors."""
    pass


class SourceUnavailableError(EdgeOneProtectionError):
    """Exception raised when the EdgeOne IP list cannot be retrieved."""
    pass


class EmptyResultSetError(EdgeOneProtectionError):
    """Exception raised when no usable prefix survives normalization."""
    pass


class BackendError(EdgeOneProtectionError):
    """Exception raised when an iptables operation fails."""
    pass


class PersistenceError(EdgeOneProtectionError):
    """Exception raised when a rule persistence strategy fails."""
    pass


class StateError(EdgeOneProtectionError):
    """Exception raised when the sync state file cannot be read or written."""
    pass


class PrivilegeError(EdgeOneProtectionError):
    """Exception raised when the process lacks root privileges."""
    pass


class MissingDependencyError(EdgeOneProtectionError):
    """Exception raised when a required command is not installed."""
    pass
