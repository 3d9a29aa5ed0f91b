"""Exceptions related to gitops-bootstrap."""

__all__ = [
    "BootstrapException",
    "InputException",
    "MalformedRepo",
    "PreflightNotInstalled",
    "ClusterQueryError",
    "SealingError",
    "ManifestIntegrityError",
    "SerializationError",
    "WriteError",
    "CommandException",
]


class BootstrapException(Exception):
    """Generic base exception used for this library."""


class InputException(BootstrapException):
    """Raised when the input options or files are not formatted as expected."""


class MalformedRepo(InputException):
    """Raised when an image repository string can't be parsed."""

    def __init__(self, image_repo: str) -> None:
        super().__init__(
            f"failed to parse image repo:{image_repo}, expected image repository "
            "in the form <registry>/<username>/<repository> or <project>/<app> "
            "for internal registry"
        )
        self.image_repo = image_repo


class PreflightNotInstalled(BootstrapException):
    """Raised when the cluster is missing Tekton Pipelines or Triggers."""


class ClusterQueryError(BootstrapException):
    """Raised when a query against the cluster API fails."""


class SealingError(BootstrapException):
    """Raised when a secret can't be sealed."""


class ManifestIntegrityError(BootstrapException):
    """Raised when the generated resources are not internally consistent."""


class SerializationError(BootstrapException):
    """Raised when a resource can't be encoded as yaml."""


class WriteError(BootstrapException):
    """Raised when the output sink fails to write a resource."""


class CommandException(BootstrapException):
    """Raised when there is a failure running a subcommand."""
