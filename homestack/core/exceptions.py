"""Core exceptions for homestack lifecycle operations."""


class HomestackError(Exception):
    """Base exception for homestack operations."""


class OperationValidationError(HomestackError):
    """Request rejected before any compose command runs."""


class MaterializationError(HomestackError):
    """Compose rendering or storage mapping failed."""


class ComposeCommandError(HomestackError):
    """Docker or docker compose command execution failed."""


class ImagePullError(HomestackError):
    """Image pull was rejected by the Docker daemon."""


class PersistenceError(HomestackError):
    """Operation or stack record could not be read or written."""


class ConfigurationError(HomestackError):
    """Configuration validation or loading failed."""
