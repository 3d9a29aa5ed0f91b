"""Names of the namespaces and resources created by a bootstrap.

The environment namespaces are derived from a single prefix, e.g. a prefix of
`tst-` produces the namespaces `tst-dev`, `tst-stage`, `tst-cicd` and
`tst-argocd`. All other fixed resource names live in `ResourceNames` which is
passed explicitly to the builders that need them.
"""

from collections.abc import Iterator
from dataclasses import dataclass, fields
from urllib.parse import urlparse

from .exceptions import InputException

__all__ = [
    "ROLES",
    "NamespaceSet",
    "derive_namespaces",
    "ResourceNames",
    "DEFAULT_NAMES",
    "repo_from_url",
    "org_repo_from_url",
]


DEV = "dev"
STAGE = "stage"
CICD = "cicd"
ARGOCD = "argocd"

ROLES = (DEV, STAGE, CICD, ARGOCD)

# Environments that may hold application services
SERVICE_ROLES = (DEV, STAGE)


@dataclass(frozen=True)
class NamespaceSet:
    """Concrete namespace name for each environment role."""

    dev: str
    stage: str
    cicd: str
    argocd: str

    def __getitem__(self, role: str) -> str:
        if role not in ROLES:
            raise KeyError(role)
        return str(getattr(self, role))

    def __iter__(self) -> Iterator[str]:
        return iter(ROLES)

    def __len__(self) -> int:
        return len(ROLES)

    def items(self) -> list[tuple[str, str]]:
        """Return (role, namespace) pairs in role order."""
        return [(role, self[role]) for role in ROLES]

    def values(self) -> list[str]:
        """Return the namespace names in role order."""
        return [self[role] for role in ROLES]


def derive_namespaces(prefix: str) -> NamespaceSet:
    """Return the namespaces for every environment role with the given prefix."""
    return NamespaceSet(**{role: f"{prefix}{role}" for role in ROLES})


@dataclass(frozen=True)
class ResourceNames:
    """Fixed names of resources shared by all environments."""

    service_account: str = "pipeline"
    docker_secret: str = "regcred"
    gitops_webhook_secret: str = "gitops-webhook-secret"
    webhook_secret_key: str = "webhook-secret-key"
    role: str = "pipelines-service-role"
    role_binding: str = "pipelines-service-role-binding"
    edit_role_binding: str = "edit-clusterrole-binding"
    env_role_binding: str = "pipeline-admin"
    internal_registry_binding: str = "internal-registry-binding"
    dryrun_task: str = "deploy-from-source-task"
    deploy_task: str = "deploy-using-kubectl-task"
    dryrun_pipeline: str = "ci-dryrun-from-pr-pipeline"
    app_ci_pipeline: str = "app-ci-pipeline"
    pr_binding: str = "github-pr-binding"
    dryrun_template: str = "ci-dryrun-from-pr-template"
    app_ci_template: str = "app-ci-template"
    event_listener: str = "cicd-event-listener"
    route: str = "gitops-webhook-event-listener"
    bootstrap_image: str = "nginxinc/nginx-unprivileged:latest"
    service_port: int = 8080

    def __post_init__(self) -> None:
        for f in fields(self):
            if f.type is str and not getattr(self, f.name):
                raise InputException(f"Resource name '{f.name}' may not be empty")

    def service_webhook_secret(self, service_name: str) -> str:
        """Name of the sealed webhook secret for a service."""
        return f"github-webhook-secret-{service_name}"


DEFAULT_NAMES = ResourceNames()


def _repo_path(url: str) -> list[str]:
    parsed = urlparse(url)
    if parsed.scheme:
        path = parsed.path
    else:
        # scp-like syntax, e.g. git@github.com:org/repo.git
        path = url.rpartition(":")[2]
    parts = [part for part in path.strip("/").split("/") if part]
    if len(parts) < 2:
        raise InputException(f"Invalid repository URL '{url}', expected <org>/<repo>")
    parts[-1] = parts[-1].removesuffix(".git")
    return parts[-2:]


def repo_from_url(url: str) -> str:
    """Return the repository name of a git URL without a `.git` suffix."""
    return _repo_path(url)[1]


def org_repo_from_url(url: str) -> str:
    """Return the `<org>/<repo>` path of a git URL."""
    return "/".join(_repo_path(url))
