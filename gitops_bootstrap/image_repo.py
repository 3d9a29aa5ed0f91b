"""Helper functions for classifying the target image repository.

The image repository decides which registry resources are generated: an
internal registry needs access granted to the pipeline service account,
while an external registry needs a sealed pull secret.
"""

from dataclasses import dataclass
import logging

from .exceptions import MalformedRepo

__all__ = [
    "ImageRepoDecision",
    "classify_image_repo",
]

_LOGGER = logging.getLogger(__name__)

DEFAULT_INTERNAL_REGISTRY = "image-registry.openshift-image-registry.svc:5000"

# Registry hosts that are never a `<project>/<app>` shorthand
PUBLIC_REGISTRIES = ("docker.io", "quay.io")

# Registry assumed for `<user>/<repo>` when there is no internal registry
DEFAULT_PUBLIC_REGISTRY = "docker.io"


@dataclass(frozen=True)
class ImageRepoDecision:
    """Result of classifying an image repository."""

    is_internal: bool
    """True when images are pushed to the internal cluster registry."""

    normalized_repo: str
    """Repository in the form `<registry>/<namespace>/<repository>`."""

    @property
    def namespace(self) -> str:
        """The user, org or project component of the repository.

        For the internal registry this is the namespace images are pushed to.
        """
        return self.normalized_repo.split("/")[1]


def classify_image_repo(
    image_repo: str, internal_registry_hostname: str
) -> ImageRepoDecision:
    """Validate the image repo and decide if it is for the internal registry.

    A repository in the form `<project>/<app>` is expanded with the internal
    registry hostname. If no internal registry is configured it is read as a
    Docker Hub `<user>/<repo>` repository instead.
    """
    components = image_repo.split("/")
    if len(components) < 2 or len(components) > 3:
        raise MalformedRepo(image_repo)
    if any(not component.strip() for component in components):
        raise MalformedRepo(image_repo)

    if len(components) == 2:
        if components[0] in PUBLIC_REGISTRIES:
            # Looks like <registry>/<username> but the repository is missing
            raise MalformedRepo(image_repo)
        if not internal_registry_hostname:
            decision = ImageRepoDecision(
                is_internal=False,
                normalized_repo=f"{DEFAULT_PUBLIC_REGISTRY}/{image_repo}",
            )
        else:
            decision = ImageRepoDecision(
                is_internal=True,
                normalized_repo=f"{internal_registry_hostname}/{image_repo}",
            )
    else:
        decision = ImageRepoDecision(
            is_internal=(components[0] == internal_registry_hostname),
            normalized_repo=image_repo,
        )
    _LOGGER.debug(
        "Image repo %s classified as %s (%s)",
        image_repo,
        "internal" if decision.is_internal else "external",
        decision.normalized_repo,
    )
    return decision
