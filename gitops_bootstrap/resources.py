"""Representation of the kubernetes resources written by a bootstrap.

Each resource kind is a dataclass that carries a fixed `kind` and `apiVersion`
and knows how to serialize itself with `to_doc`. Resources also report the
other resources they refer to by name so the generated tree can be checked
for dangling references before anything is written.

The `create_*` functions are the factory for each kind and derive the object
metadata only from the `NamespacedName` passed in.
"""

from dataclasses import dataclass, field, replace
import logging
from typing import Any, ClassVar

from mashumaro import DataClassDictMixin, field_options
from mashumaro.config import BaseConfig

__all__ = [
    "NamespacedName",
    "NamedResource",
    "ObjectMeta",
    "Document",
    "Resource",
    "Namespace",
    "ServiceAccount",
    "Role",
    "RoleBinding",
    "SealedSecret",
    "Deployment",
    "Service",
    "Route",
    "Kustomization",
]

_LOGGER = logging.getLogger(__name__)

RBAC_API_GROUP = "rbac.authorization.k8s.io"
SERVICE_ACCOUNT_KIND = "ServiceAccount"
SECRET_KIND = "Secret"
ROLE_KIND = "Role"
CLUSTER_ROLE_KIND = "ClusterRole"
NAME_LABEL = "app.kubernetes.io/name"
PART_OF_LABEL = "app.kubernetes.io/part-of"

# Policy rules bound to the pipeline service account in the cicd namespace
PIPELINE_RULES: list[dict[str, Any]] = [
    {
        "api_groups": ["tekton.dev"],
        "resources": [
            "eventlisteners",
            "triggerbindings",
            "triggertemplates",
            "tasks",
            "taskruns",
        ],
        "verbs": ["get"],
    },
    {
        "api_groups": ["tekton.dev"],
        "resources": ["pipelineruns", "pipelineresources", "taskruns"],
        "verbs": ["create"],
    },
]


@dataclass(frozen=True, order=True)
class NamespacedName:
    """Namespace and name used to build the metadata of a resource."""

    namespace: str | None
    name: str

    def __str__(self) -> str:
        if self.namespace:
            return f"{self.namespace}/{self.name}"
        return self.name


@dataclass(frozen=True, order=True)
class NamedResource:
    """Identifier for a kubernetes resource."""

    kind: str
    namespace: str | None
    name: str

    def __str__(self) -> str:
        """Return the kind and namespaced name concatenated as an id."""
        if self.namespace:
            return f"{self.kind}/{self.namespace}/{self.name}"
        return f"{self.kind}/{self.name}"


@dataclass
class Document(DataClassDictMixin):
    """Base class for all objects written to the resource tree."""

    def to_doc(self) -> dict[str, Any]:
        """Return the object as a dictionary ready to be serialized."""
        return self.to_dict()

    class Config(BaseConfig):
        omit_none = True
        serialize_by_alias = True


@dataclass
class ObjectMeta(Document):
    """Standard object metadata."""

    name: str
    namespace: str | None = None
    labels: dict[str, str] | None = None

    @classmethod
    def from_name(cls, name: NamespacedName) -> "ObjectMeta":
        return cls(name=name.name, namespace=name.namespace)


@dataclass
class Resource(Document):
    """Base class for a kubernetes object with a kind and metadata."""

    kind: ClassVar[str]
    """The kind of the object."""

    api_version: ClassVar[str]
    """The apiVersion of the object."""

    metadata: ObjectMeta
    """Object metadata, derived from the namespaced name of the object."""

    @property
    def named_resource(self) -> NamedResource:
        """Return the identifier of this object."""
        return NamedResource(self.kind, self.metadata.namespace, self.metadata.name)

    def provides(self) -> list[NamedResource]:
        """Return the objects that exist once this resource is applied."""
        return [self.named_resource]

    def references(self) -> list[NamedResource]:
        """Return the objects this resource refers to by name."""
        return []

    def to_doc(self) -> dict[str, Any]:
        return {
            "apiVersion": self.api_version,
            "kind": self.kind,
            **self.to_dict(),
        }


@dataclass
class Namespace(Resource):
    """A kubernetes Namespace."""

    kind: ClassVar[str] = "Namespace"
    api_version: ClassVar[str] = "v1"


@dataclass
class ObjectReference(Document):
    """Reference to an object in the same namespace."""

    name: str


@dataclass
class ServiceAccount(Resource):
    """A ServiceAccount used to run pipelines."""

    kind: ClassVar[str] = SERVICE_ACCOUNT_KIND
    api_version: ClassVar[str] = "v1"

    secrets: list[ObjectReference] | None = None

    def references(self) -> list[NamedResource]:
        return [
            NamedResource(SECRET_KIND, self.metadata.namespace, secret.name)
            for secret in self.secrets or []
        ]


@dataclass
class PolicyRule(Document):
    """A rule describing the verbs allowed on a set of resources."""

    api_groups: list[str] = field(metadata=field_options(alias="apiGroups"))
    resources: list[str]
    verbs: list[str]


@dataclass
class Role(Resource):
    """A namespaced set of permissions."""

    kind: ClassVar[str] = ROLE_KIND
    api_version: ClassVar[str] = f"{RBAC_API_GROUP}/v1"

    rules: list[PolicyRule] = field(default_factory=list)


@dataclass
class Subject(Document):
    """The subject a role is granted to."""

    kind: str
    name: str
    namespace: str | None = None


@dataclass
class RoleRef(Document):
    """Reference to the role that is granted."""

    api_group: str = field(metadata=field_options(alias="apiGroup"))
    kind: str
    name: str


@dataclass
class RoleBinding(Resource):
    """A grant of a role to a list of subjects."""

    kind: ClassVar[str] = "RoleBinding"
    api_version: ClassVar[str] = f"{RBAC_API_GROUP}/v1"

    subjects: list[Subject]
    role_ref: RoleRef = field(metadata=field_options(alias="roleRef"))

    def references(self) -> list[NamedResource]:
        refs = [
            NamedResource(
                subject.kind,
                subject.namespace or self.metadata.namespace,
                subject.name,
            )
            for subject in self.subjects
        ]
        # Cluster roles are provided by the cluster itself
        if self.role_ref.kind == ROLE_KIND:
            refs.append(
                NamedResource(ROLE_KIND, self.metadata.namespace, self.role_ref.name)
            )
        return refs


@dataclass
class SecretTemplate(Document):
    """Template of the Secret created when a SealedSecret is unsealed."""

    metadata: ObjectMeta
    type: str = "Opaque"


@dataclass
class SealedSecretSpec(Document):
    """Encrypted values of a SealedSecret."""

    encrypted_data: dict[str, str] = field(
        metadata=field_options(alias="encryptedData")
    )
    template: SecretTemplate


@dataclass
class SealedSecret(Resource):
    """A Secret encrypted for the sealed-secrets controller of a cluster.

    This is the only form in which secret values are written to the tree.
    """

    kind: ClassVar[str] = "SealedSecret"
    api_version: ClassVar[str] = "bitnami.com/v1alpha1"

    spec: SealedSecretSpec

    def provides(self) -> list[NamedResource]:
        """The controller unseals this into a Secret of the same name."""
        return [
            self.named_resource,
            NamedResource(SECRET_KIND, self.metadata.namespace, self.metadata.name),
        ]


@dataclass
class Deployment(Resource):
    """A Deployment of an application service."""

    kind: ClassVar[str] = "Deployment"
    api_version: ClassVar[str] = "apps/v1"

    spec: dict[str, Any]


@dataclass
class Service(Resource):
    """A Service exposing an application Deployment."""

    kind: ClassVar[str] = "Service"
    api_version: ClassVar[str] = "v1"

    spec: dict[str, Any]


@dataclass
class RouteTarget(Document):
    """The service a Route sends traffic to."""

    kind: str
    name: str
    weight: int = 100


@dataclass
class RoutePort(Document):
    """The port of the target service."""

    target_port: int = field(metadata=field_options(alias="targetPort"))


@dataclass
class RouteSpec(Document):
    """Spec of an OpenShift Route."""

    to: RouteTarget
    port: RoutePort
    wildcard_policy: str = field(
        default="None", metadata=field_options(alias="wildcardPolicy")
    )


@dataclass
class Route(Resource):
    """An OpenShift Route exposing a Service outside the cluster."""

    kind: ClassVar[str] = "Route"
    api_version: ClassVar[str] = "route.openshift.io/v1"

    spec: RouteSpec


@dataclass
class Kustomization(Document):
    """A kustomize aggregation of the resource files in a directory."""

    kind: ClassVar[str] = "Kustomization"
    api_version: ClassVar[str] = "kustomize.config.k8s.io/v1beta1"

    resources: list[str] = field(default_factory=list)
    """Paths of the resource files, relative to the kustomization."""

    def add_resource(self, path: str) -> bool:
        """Append a resource path unless it is already listed.

        Returns True if the path was added.
        """
        if path in self.resources:
            return False
        self.resources.append(path)
        return True

    def to_doc(self) -> dict[str, Any]:
        return {
            "apiVersion": self.api_version,
            "kind": self.kind,
            **self.to_dict(),
        }


def create_namespace(name: str) -> Namespace:
    """Create a Namespace with the given name."""
    return Namespace(metadata=ObjectMeta(name=name))


def create_service_account(
    name: NamespacedName, secret_names: list[str] | None = None
) -> ServiceAccount:
    """Create a ServiceAccount optionally referencing a list of secrets."""
    secrets = None
    if secret_names:
        secrets = [ObjectReference(name=secret) for secret in secret_names]
    return ServiceAccount(metadata=ObjectMeta.from_name(name), secrets=secrets)


def add_secret_to_service_account(
    sa: ServiceAccount, secret_name: str
) -> ServiceAccount:
    """Return a copy of the ServiceAccount that also references the secret."""
    secrets = list(sa.secrets or [])
    if not any(secret.name == secret_name for secret in secrets):
        secrets.append(ObjectReference(name=secret_name))
    return replace(sa, secrets=secrets)


def create_role(name: NamespacedName, rules: list[dict[str, Any]]) -> Role:
    """Create a Role with the given policy rules."""
    return Role(
        metadata=ObjectMeta.from_name(name),
        rules=[PolicyRule(**rule) for rule in rules],
    )


def create_role_binding(
    name: NamespacedName, sa: ServiceAccount, role_kind: str, role_name: str
) -> RoleBinding:
    """Create a RoleBinding granting the role to the ServiceAccount."""
    return RoleBinding(
        metadata=ObjectMeta.from_name(name),
        subjects=[
            Subject(
                kind=sa.kind,
                name=sa.metadata.name,
                namespace=sa.metadata.namespace,
            )
        ],
        role_ref=RoleRef(api_group=RBAC_API_GROUP, kind=role_kind, name=role_name),
    )


def _labels(name: str, part_of: str | None) -> dict[str, str]:
    labels = {NAME_LABEL: name}
    if part_of:
        labels[PART_OF_LABEL] = part_of
    return labels


def create_deployment(
    name: NamespacedName, image: str, port: int, part_of: str | None = None
) -> Deployment:
    """Create a single replica Deployment of an image listening on a port."""
    labels = _labels(name.name, part_of)
    metadata = ObjectMeta.from_name(name)
    metadata.labels = dict(labels)
    return Deployment(
        metadata=metadata,
        spec={
            "replicas": 1,
            "selector": {"matchLabels": {NAME_LABEL: name.name}},
            "template": {
                "metadata": {"labels": dict(labels)},
                "spec": {
                    "containers": [
                        {
                            "name": name.name,
                            "image": image,
                            "imagePullPolicy": "Always",
                            "ports": [{"containerPort": port}],
                        }
                    ],
                },
            },
        },
    )


def create_service(
    name: NamespacedName, port: int, part_of: str | None = None
) -> Service:
    """Create a Service selecting the Deployment with the same name."""
    metadata = ObjectMeta.from_name(name)
    metadata.labels = _labels(name.name, part_of)
    return Service(
        metadata=metadata,
        spec={
            "ports": [{"name": "http", "port": port, "targetPort": port}],
            "selector": {NAME_LABEL: name.name},
        },
    )


def create_route(name: NamespacedName, service_name: str, port: int) -> Route:
    """Create a Route to the named Service."""
    return Route(
        metadata=ObjectMeta.from_name(name),
        spec=RouteSpec(
            to=RouteTarget(kind="Service", name=service_name),
            port=RoutePort(target_port=port),
        ),
    )


def create_kustomization(resources: list[str] | None = None) -> Kustomization:
    """Create a Kustomization listing the resource paths."""
    return Kustomization(resources=list(resources or []))
