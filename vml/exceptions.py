"""Custom exceptions for vml."""


class VmlError(RuntimeError):
    """Base class for every error vml reports to the user."""


class ConfigError(VmlError):
    """Raised when a configuration value is missing or invalid."""


class NotFoundError(VmlError):
    """Raised when a referenced VM or cached image does not exist."""


class UnknownImageError(NotFoundError):
    """Raised when an image name is not in the catalog."""


class AlreadyExistsError(VmlError):
    """Raised when creating a VM whose directory already exists."""


class FetchError(VmlError):
    """Raised on network or IO failures while downloading an image."""


class SeedBuildError(VmlError):
    """Raised when the cloud-init seed image cannot be built."""


class AlreadyRunningError(VmlError):
    """Raised when starting a VM that already answers on its monitor socket."""


class NotRunningError(VmlError):
    """Raised when an operation needs a running VM and none is found."""


class LaunchError(VmlError):
    """Raised when the emulator process cannot be spawned."""


class MonitorError(VmlError):
    """Raised on QMP protocol failures or error replies."""


class ReadinessTimeoutError(VmlError, TimeoutError):
    """Raised when SSH does not become reachable before the deadline."""


class WaitCancelledError(VmlError):
    """Raised when waiting for SSH is aborted by the caller."""
