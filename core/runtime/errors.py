"""
Error taxonomy for esmd runtime bootstrap.

Every fatal category derives from RuntimeBootstrapError so the entry point
can abort the whole startup sequence with a single handler. Recoverable
categories (certificate acquisition, shutdown cleanup) stand on their own.
"""


class RuntimeBootstrapError(Exception):
    """Base exception for fatal runtime bootstrap failures."""
    pass


class ConfigurationError(RuntimeBootstrapError):
    """Raised when command-line or environment configuration is malformed."""
    pass


class FilesystemError(RuntimeBootstrapError):
    """Raised when a required directory cannot be created."""
    pass


class ObservabilityError(RuntimeBootstrapError):
    """Raised when a log sink cannot be opened."""
    pass


class DependencyMissingError(RuntimeBootstrapError):
    """Raised when the Node.js runtime is absent or unusable."""

    def __init__(self, binary: str, reason: str):
        self.binary = binary
        self.reason = reason
        super().__init__(f"{binary}: {reason}")


class StoreOpenError(RuntimeBootstrapError):
    """Base exception for persistent store open failures."""

    def __init__(self, path, reason: str):
        self.path = path
        self.reason = reason
        super().__init__(f"{path}: {reason}")


class StorePathError(StoreOpenError):
    """The store path or its parent directory is unusable."""
    pass


class StorePermissionError(StoreOpenError):
    """The store file cannot be read or written by this process."""
    pass


class StoreCorruptError(StoreOpenError):
    """The store file exists but is not a valid database."""
    pass


class ListenerStartError(RuntimeBootstrapError):
    """Raised when a listener cannot bind or exits during startup."""
    pass


class RuntimeStartupError(RuntimeBootstrapError):
    """Raised when bootstrap fails for a reason outside the categories above."""
    pass


class StoreClosedError(Exception):
    """Raised when the store handle is used after close."""
    pass


class CertificateAcquisitionError(Exception):
    """Raised when a certificate cannot be obtained for a single hostname."""

    def __init__(self, hostname: str, reason: str):
        self.hostname = hostname
        self.reason = reason
        super().__init__(f"{hostname}: {reason}")


class ShutdownCleanupError(Exception):
    """Raised (and logged) when a shutdown cleanup action fails."""

    def __init__(self, action: str, cause: BaseException):
        self.action = action
        self.cause = cause
        super().__init__(f"{action}: {cause}")
