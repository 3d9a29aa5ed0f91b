"""Library for building the resource tree of a GitOps bootstrap.

The `ManifestTreeBuilder` adds resources to a `ResourceTree` in named stages.
Later stages depend on the names produced by earlier ones (e.g. role bindings
refer to the pipeline service account) so `bootstrap` runs them in order:

  - Namespaces for every environment
  - The pipeline service account, role and role bindings
  - Access to the image registry: a role binding for the internal registry,
    or a sealed pull secret for an external registry
  - Tekton tasks, pipelines, triggers, event listener and route
  - Deployment, service and sealed webhook secret for each service
  - The `pipelines.yaml` manifest descriptor

The tree is validated before it is returned, and any error aborts the whole
build.

Example usage:
```
from gitops_bootstrap import bootstrap, secrets

options = bootstrap.BootstrapOptions(
    prefix="tst-",
    gitops_repo_url="https://github.com/my-org/gitops.git",
    gitops_webhook_secret="123",
    image_repo="quay.io/my-org/http-api",
    docker_config_json=docker_config,
    services=(
        bootstrap.ServiceOptions("https://github.com/my-org/http-api.git", "456"),
    ),
    skip_checks=True,
)
tree = bootstrap.bootstrap(options, secrets.SecretSealer(key_source))
```
"""

from collections.abc import Callable, Iterable
import copy
from dataclasses import dataclass, field
import hashlib
import logging
import re

from . import tekton
from .config import (
    MANIFEST_FILE,
    Application,
    Environment,
    Manifest,
    Pipelines,
    SecretRef,
    Service,
    TemplateBinding,
    Webhook,
)
from .exceptions import InputException, PreflightNotInstalled
from .image_repo import ImageRepoDecision, classify_image_repo
from .naming import (
    ARGOCD,
    CICD,
    DEFAULT_NAMES,
    DEV,
    SERVICE_ROLES,
    STAGE,
    NamespaceSet,
    ResourceNames,
    derive_namespaces,
    org_repo_from_url,
    repo_from_url,
)
from .resources import (
    CLUSTER_ROLE_KIND,
    PIPELINE_RULES,
    ROLE_KIND,
    NamespacedName,
    SealedSecret,
    ServiceAccount,
    add_secret_to_service_account,
    create_deployment,
    create_namespace,
    create_role,
    create_role_binding,
    create_route,
    create_service,
    create_service_account,
)
from .secrets import (
    DOCKER_CONFIG_JSON_KEY,
    DOCKER_CONFIG_JSON_SECRET,
    OPAQUE_SECRET,
    SecretSealer,
)
from .tree import ResourceTree, validate_tree

__all__ = [
    "BootstrapOptions",
    "ServiceOptions",
    "ManifestTreeBuilder",
    "bootstrap",
    "check_install",
]

_LOGGER = logging.getLogger(__name__)

ENVIRONMENTS_DIR = "environments"
NAMESPACES_DIR = "01-namespaces"
ROLEBINDINGS_DIR = "02-rolebindings"
SECRETS_DIR = "03-secrets"
TASKS_DIR = "04-tasks"
PIPELINES_DIR = "05-pipelines"
BINDINGS_DIR = "06-bindings"
TEMPLATES_DIR = "07-templates"
EVENTLISTENERS_DIR = "08-eventlisteners"
ROUTES_DIR = "09-routes"

SERVICE_ACCOUNT_FILE = f"{ROLEBINDINGS_DIR}/pipeline-service-account.yaml"
DEPLOYMENT_FILE = "100-deployment.yaml"
SERVICE_FILE = "200-service.yaml"

EDIT_CLUSTER_ROLE = "edit"

# Names must be usable as kubernetes object names and in paths
_DNS_LABEL = re.compile(r"^[a-z0-9]([-a-z0-9]*[a-z0-9])?$")
DNS_LABEL_MAX_LENGTH = 63

InstallChecker = Callable[[], bool]
"""Returns True if the pipeline engine is installed in the cluster."""

NamespaceExists = Callable[[str], bool]
"""Returns True if the namespace exists in the cluster."""


@dataclass(frozen=True)
class ServiceOptions:
    """A service built from a source repository."""

    source_url: str
    """URL of the service source repository."""

    webhook_secret: str = field(repr=False)
    """Secret used to validate webhooks from the source repository."""

    app_name: str | None = None
    """Application the service belongs to, defaults to the repository name."""

    service_name: str | None = None
    """Name of the service, defaults to `<repository>-svc`."""

    environment: str = DEV
    """Role of the environment the service is deployed to."""


@dataclass(frozen=True)
class BootstrapOptions:
    """Options for bootstrapping a GitOps repository."""

    prefix: str
    """Prefix added to every environment namespace."""

    gitops_repo_url: str
    """URL of the GitOps repository the resources are committed to."""

    gitops_webhook_secret: str = field(repr=False)
    """Secret used to validate webhooks from the GitOps repository."""

    image_repo: str
    """Image repository services are pushed to."""

    internal_registry_hostname: str = ""
    """Hostname of the internal image registry of the cluster."""

    docker_config_json: str | None = field(default=None, repr=False)
    """Registry credentials, required for an external image repository."""

    services: tuple[ServiceOptions, ...] = ()
    """Services deployed to the environments."""

    skip_checks: bool = False
    """Skip checking the cluster for a pipelines installation."""


def _check_name(kind: str, name: str) -> None:
    if not _DNS_LABEL.match(name):
        raise InputException(
            f"Invalid {kind} name '{name}', must be lowercase alphanumeric or '-'"
        )
    if len(name) > DNS_LABEL_MAX_LENGTH:
        raise InputException(
            f"Invalid {kind} name '{name}', must be at most "
            f"{DNS_LABEL_MAX_LENGTH} characters"
        )


class ManifestTreeBuilder:
    """Builds the resource tree of a bootstrap one stage at a time.

    Sealed secrets written by a previous run are passed as `previous_secrets`
    and are reused instead of sealed again, so re-running a bootstrap leaves
    their files unchanged. Delete a sealed secret file to seal a new value.
    """

    def __init__(
        self,
        namespaces: NamespaceSet,
        decision: ImageRepoDecision,
        sealer: SecretSealer,
        names: ResourceNames = DEFAULT_NAMES,
        previous_secrets: Iterable[SealedSecret] = (),
    ) -> None:
        """Initialize ManifestTreeBuilder."""
        self._namespaces = namespaces
        self._decision = decision
        self._sealer = sealer
        self._names = names
        self._tree = ResourceTree()
        self._service_account: ServiceAccount | None = None
        self._sealed: dict[NamespacedName, tuple[bytes, SealedSecret]] = {}
        self._previous = {
            NamespacedName(secret.metadata.namespace, secret.metadata.name): secret
            for secret in previous_secrets
        }
        self._services: dict[tuple[str, str, str], Service] = {}

    @property
    def pipelines_dir(self) -> str:
        """Directory of the pipeline resources in the cicd environment."""
        return f"{ENVIRONMENTS_DIR}/{self._namespaces[CICD]}/base/pipelines"

    def environment_dir(self, role: str) -> str:
        """Directory of the base resources of an environment."""
        if role == CICD:
            return self.pipelines_dir
        return f"{ENVIRONMENTS_DIR}/{self._namespaces[role]}/base"

    def service_dir(self, role: str, service_name: str) -> str:
        """Directory of the resources of a service."""
        return (
            f"{ENVIRONMENTS_DIR}/{self._namespaces[role]}/services/"
            f"{service_name}/base/config"
        )

    def _cicd_name(self, name: str) -> NamespacedName:
        return NamespacedName(self._namespaces[CICD], name)

    def _require_service_account(self) -> ServiceAccount:
        if self._service_account is None:
            raise InputException("The pipeline service account has not been created")
        return self._service_account

    def _seal(
        self,
        name: NamespacedName,
        key: str,
        plaintext: str | bytes | None,
        secret_type: str = OPAQUE_SECRET,
    ) -> SealedSecret:
        """Seal a secret value, reusing the result if it was already sealed."""
        value = plaintext.encode() if isinstance(plaintext, str) else plaintext or b""
        digest = hashlib.sha256(value).digest()
        if (cached := self._sealed.get(name)) is not None and cached[0] == digest:
            return cached[1]
        if (
            cached is None
            and (previous := self._previous.get(name)) is not None
            and key in previous.spec.encrypted_data
            and previous.spec.template.type == secret_type
        ):
            _LOGGER.info("Keeping existing sealed secret %s", name)
            self._sealed[name] = (digest, previous)
            return previous
        sealed = self._sealer.seal(name, key, value, secret_type=secret_type)
        self._sealed[name] = (digest, sealed)
        return sealed

    def add_namespaces(self) -> None:
        """Add a Namespace for every environment."""
        for role, namespace in self._namespaces.items():
            self._tree.add_resource(
                self.environment_dir(role),
                f"{NAMESPACES_DIR}/{role}-environment.yaml",
                create_namespace(namespace),
            )

    def add_rbac(self) -> None:
        """Add the pipeline service account and the roles granted to it."""
        names = self._names
        sa = create_service_account(self._cicd_name(names.service_account))
        self._service_account = sa
        self._tree.add_resource(self.pipelines_dir, SERVICE_ACCOUNT_FILE, sa)

        role = create_role(self._cicd_name(names.role), PIPELINE_RULES)
        self._tree.add_resource(
            self.pipelines_dir, f"{ROLEBINDINGS_DIR}/pipeline-service-role.yaml", role
        )
        self._tree.add_resource(
            self.pipelines_dir,
            f"{ROLEBINDINGS_DIR}/pipeline-service-rolebinding.yaml",
            create_role_binding(
                self._cicd_name(names.role_binding), sa, ROLE_KIND, role.metadata.name
            ),
        )
        self._tree.add_resource(
            self.pipelines_dir,
            f"{ROLEBINDINGS_DIR}/{names.edit_role_binding}.yaml",
            create_role_binding(
                self._cicd_name(names.edit_role_binding),
                sa,
                CLUSTER_ROLE_KIND,
                EDIT_CLUSTER_ROLE,
            ),
        )
        for role_name in (DEV, STAGE):
            self._tree.add_resource(
                self.environment_dir(role_name),
                f"{ROLEBINDINGS_DIR}/{names.env_role_binding}-rolebinding.yaml",
                create_role_binding(
                    NamespacedName(self._namespaces[role_name], names.env_role_binding),
                    sa,
                    CLUSTER_ROLE_KIND,
                    EDIT_CLUSTER_ROLE,
                ),
            )

    def add_registry_access(
        self,
        docker_config_json: str | bytes | None = None,
        namespace_exists: NamespaceExists | None = None,
    ) -> None:
        """Give the pipeline service account access to the image registry.

        The internal registry namespace is created unless `namespace_exists`
        reports it already exists in the cluster. An external registry needs
        the registry credentials which are sealed into a pull secret.
        """
        sa = self._require_service_account()
        names = self._names
        if self._decision.is_internal:
            registry_ns = self._decision.namespace
            _check_name("image repository namespace", registry_ns)
            exists = registry_ns in self._namespaces.values()
            if not exists and namespace_exists is not None:
                exists = namespace_exists(registry_ns)
            if not exists:
                _LOGGER.debug("Creating internal registry namespace %s", registry_ns)
                self._tree.add_resource(
                    self.pipelines_dir,
                    f"{NAMESPACES_DIR}/{registry_ns}.yaml",
                    create_namespace(registry_ns),
                )
            self._tree.add_resource(
                self.pipelines_dir,
                f"{ROLEBINDINGS_DIR}/{names.internal_registry_binding}.yaml",
                create_role_binding(
                    NamespacedName(registry_ns, names.internal_registry_binding),
                    sa,
                    CLUSTER_ROLE_KIND,
                    EDIT_CLUSTER_ROLE,
                ),
            )
            return

        secret = self._seal(
            self._cicd_name(names.docker_secret),
            DOCKER_CONFIG_JSON_KEY,
            docker_config_json,
            secret_type=DOCKER_CONFIG_JSON_SECRET,
        )
        self._tree.add_resource(
            self.pipelines_dir, f"{SECRETS_DIR}/docker-config.yaml", secret
        )
        sa = add_secret_to_service_account(sa, secret.metadata.name)
        self._service_account = sa
        self._tree.add_resource(self.pipelines_dir, SERVICE_ACCOUNT_FILE, sa)

    def add_gitops_webhook_secret(self, webhook_secret: str) -> None:
        """Add the sealed secret validating webhooks from the GitOps repo."""
        names = self._names
        secret = self._seal(
            self._cicd_name(names.gitops_webhook_secret),
            names.webhook_secret_key,
            webhook_secret,
        )
        self._tree.add_resource(
            self.pipelines_dir,
            f"{SECRETS_DIR}/{names.gitops_webhook_secret}.yaml",
            secret,
        )

    def add_pipelines(self, gitops_repo_url: str) -> None:
        """Add the Tekton resources of the cicd environment."""
        names = self._names
        sa = self._require_service_account()
        sa_name = sa.metadata.name
        gitops_repo = org_repo_from_url(gitops_repo_url)

        cicd_name = self._cicd_name
        resources = [
            (
                TASKS_DIR,
                tekton.create_deploy_from_source_task(cicd_name(names.dryrun_task)),
            ),
            (
                TASKS_DIR,
                tekton.create_deploy_using_kubectl_task(cicd_name(names.deploy_task)),
            ),
            (
                PIPELINES_DIR,
                tekton.create_app_ci_pipeline(cicd_name(names.app_ci_pipeline)),
            ),
            (
                PIPELINES_DIR,
                tekton.create_ci_dryrun_pipeline(
                    cicd_name(names.dryrun_pipeline), names.dryrun_task
                ),
            ),
            (BINDINGS_DIR, tekton.create_pr_binding(cicd_name(names.pr_binding))),
            (
                TEMPLATES_DIR,
                tekton.create_app_ci_template(
                    cicd_name(names.app_ci_template),
                    sa_name,
                    names.app_ci_pipeline,
                    self._decision.normalized_repo,
                    tls_verify=not self._decision.is_internal,
                ),
            ),
            (
                TEMPLATES_DIR,
                tekton.create_ci_dryrun_template(
                    cicd_name(names.dryrun_template), sa_name, names.dryrun_pipeline
                ),
            ),
        ]
        event_listener = tekton.create_event_listener(
            cicd_name(names.event_listener),
            sa_name,
            gitops_repo,
            webhook_secret_name=names.gitops_webhook_secret,
            webhook_secret_key=names.webhook_secret_key,
            pr_binding=names.pr_binding,
            dryrun_template=names.dryrun_template,
            app_ci_template=names.app_ci_template,
        )
        resources.append((EVENTLISTENERS_DIR, event_listener))
        resources.append(
            (
                ROUTES_DIR,
                create_route(
                    self._cicd_name(names.route),
                    event_listener.service_name,
                    names.service_port,
                ),
            )
        )
        for directory, resource in resources:
            self._tree.add_resource(
                self.pipelines_dir,
                f"{directory}/{resource.metadata.name}.yaml",
                resource,
            )

    def add_service(self, service: ServiceOptions) -> str:
        """Add the resources of a service and its sealed webhook secret.

        Adding a service with the same name again replaces its resources
        without listing them twice. Returns the name of the service.
        """
        if service.environment not in SERVICE_ROLES:
            raise InputException(
                f"Services may only be added to {SERVICE_ROLES}, "
                f"not '{service.environment}'"
            )
        names = self._names
        repo = repo_from_url(service.source_url)
        app_name = service.app_name or repo
        service_name = service.service_name or f"{repo}-svc"
        _check_name("application", app_name)
        _check_name("service", service_name)

        env_ns = self._namespaces[service.environment]
        config_dir = self.service_dir(service.environment, service_name)
        svc_name = NamespacedName(env_ns, service_name)
        self._tree.add_resource(
            config_dir,
            DEPLOYMENT_FILE,
            create_deployment(
                svc_name, names.bootstrap_image, names.service_port, part_of=app_name
            ),
        )
        self._tree.add_resource(
            config_dir,
            SERVICE_FILE,
            create_service(svc_name, names.service_port, part_of=app_name),
        )

        secret_name = names.service_webhook_secret(service_name)
        secret = self._seal(
            self._cicd_name(secret_name),
            names.webhook_secret_key,
            service.webhook_secret,
        )
        self._tree.add_resource(
            self.pipelines_dir, f"{SECRETS_DIR}/{secret_name}.yaml", secret
        )
        self._services[(env_ns, app_name, service_name)] = Service(
            name=service_name,
            source_url=service.source_url,
            webhook=Webhook(
                secret=SecretRef(name=secret_name, namespace=self._namespaces[CICD])
            ),
        )
        _LOGGER.debug("Added service %s/%s to %s", app_name, service_name, env_ns)
        return service_name

    def build_manifest(self, base: Manifest | None = None) -> Manifest:
        """Add the manifest descriptor, merged into an existing descriptor."""
        manifest = Manifest()
        for role, namespace in self._namespaces.items():
            env = Environment(
                name=namespace, is_cicd=(role == CICD), is_argocd=(role == ARGOCD)
            )
            if role == DEV:
                env.pipelines = Pipelines(
                    integration=TemplateBinding(
                        template=self._names.app_ci_template,
                        binding=self._names.pr_binding,
                    )
                )
            manifest.environments.append(env)
        for (env_ns, app_name, _), service in self._services.items():
            env = manifest.get_environment(env_ns)
            assert env is not None
            env.add_application(Application(name=app_name, services=[service]))

        if base is not None:
            merged = copy.deepcopy(base)
            merged.merge(manifest)
            manifest = merged
            self._add_previous_secrets(base)
        self._tree.set(MANIFEST_FILE, manifest)
        return manifest

    def _add_previous_secrets(self, base: Manifest) -> None:
        """Keep the webhook secrets of services from a previous run listed."""
        cicd = self._namespaces[CICD]
        added = {service.name for service in self._services.values()}
        for env in base.environments:
            for app in env.apps:
                for service in app.services:
                    if service.name in added or service.webhook is None:
                        continue
                    secret = service.webhook.secret
                    if secret.namespace != cicd:
                        continue
                    path = f"{SECRETS_DIR}/{secret.name}.yaml"
                    if f"{self.pipelines_dir}/{path}" not in self._tree:
                        self._tree.add_existing(self.pipelines_dir, path)

    def build(self) -> ResourceTree:
        """Validate and return the completed tree."""
        if MANIFEST_FILE not in self._tree:
            self.build_manifest()
        validate_tree(self._tree)
        return self._tree


def check_install(install_checker: InstallChecker | None) -> None:
    """Verify the pipeline engine is installed in the cluster."""
    if install_checker is None:
        raise InputException(
            "An installation checker is required unless skipping checks"
        )
    if not install_checker():
        raise PreflightNotInstalled(
            "failed due to Tekton Pipelines or Triggers are not installed"
        )


def bootstrap(
    options: BootstrapOptions,
    sealer: SecretSealer,
    *,
    install_checker: InstallChecker | None = None,
    namespace_exists: NamespaceExists | None = None,
    base_manifest: Manifest | None = None,
    previous_secrets: Iterable[SealedSecret] = (),
    names: ResourceNames = DEFAULT_NAMES,
) -> ResourceTree:
    """Build the complete resource tree for the bootstrap options.

    The installation check runs first unless `skip_checks` is set. When a
    `base_manifest` is given the new environments and services are merged
    into it, and `previous_secrets` are reused rather than sealed again.
    """
    if not options.skip_checks:
        check_install(install_checker)

    decision = classify_image_repo(
        options.image_repo, options.internal_registry_hostname
    )
    namespaces = derive_namespaces(options.prefix)
    for namespace in namespaces.values():
        _check_name("namespace", namespace)

    builder = ManifestTreeBuilder(
        namespaces, decision, sealer, names, previous_secrets=previous_secrets
    )
    builder.add_namespaces()
    builder.add_rbac()
    builder.add_registry_access(options.docker_config_json, namespace_exists)
    builder.add_gitops_webhook_secret(options.gitops_webhook_secret)
    builder.add_pipelines(options.gitops_repo_url)
    for service in options.services:
        builder.add_service(service)
    builder.build_manifest(base_manifest)
    tree = builder.build()
    _LOGGER.info("Bootstrapped %d files for prefix '%s'", len(tree), options.prefix)
    return tree
