"""Representation of the `pipelines.yaml` manifest descriptor.

The manifest records the environments created by a bootstrap along with the
applications and services deployed to them. It is written to the root of the
GitOps repository and read again when a bootstrap is re-run so that new
environments, applications and services are merged into the existing ones.
"""

import copy
from dataclasses import dataclass, field
import logging
from pathlib import Path

import aiofiles
from mashumaro import field_options
from mashumaro.exceptions import InvalidFieldValue, MissingField
from mashumaro.config import BaseConfig
import yaml

from .exceptions import InputException
from .resources import Document

__all__ = [
    "read_manifest",
    "Manifest",
    "Environment",
    "Application",
    "Service",
]

_LOGGER = logging.getLogger(__name__)

MANIFEST_FILE = "pipelines.yaml"


@dataclass
class BaseConfigDocument(Document):
    """Base class for manifest descriptor objects."""

    class Config(BaseConfig):
        omit_none = True
        omit_default = True
        serialize_by_alias = True


@dataclass
class SecretRef(BaseConfigDocument):
    """Reference to a sealed secret."""

    name: str
    namespace: str


@dataclass
class Webhook(BaseConfigDocument):
    """Webhook configuration of a service repository."""

    secret: SecretRef


@dataclass
class Service(BaseConfigDocument):
    """A service built from a source repository."""

    name: str
    source_url: str | None = None
    webhook: Webhook | None = None

    def update(self, other: "Service") -> None:
        """Update this service in place with values from another service."""
        if other.source_url is not None:
            self.source_url = other.source_url
        if other.webhook is not None:
            self.webhook = other.webhook


@dataclass
class Application(BaseConfigDocument):
    """An application made of one or more services."""

    name: str
    services: list[Service] = field(default_factory=list)

    def get_service(self, name: str) -> Service | None:
        return next((svc for svc in self.services if svc.name == name), None)

    def add_service(self, service: Service) -> Service:
        """Add the service, or update the existing service with the same name."""
        if (existing := self.get_service(service.name)) is not None:
            existing.update(service)
            return existing
        self.services.append(service)
        return service


@dataclass
class TemplateBinding(BaseConfigDocument):
    """A trigger template and binding pair."""

    template: str
    binding: str


@dataclass
class Pipelines(BaseConfigDocument):
    """Pipelines that run for changes to an environment's services."""

    integration: TemplateBinding | None = None


@dataclass
class Environment(BaseConfigDocument):
    """An environment backed by a namespace in the cluster."""

    name: str
    pipelines: Pipelines | None = None
    apps: list[Application] = field(default_factory=list)
    is_cicd: bool = field(default=False, metadata=field_options(alias="cicd"))
    is_argocd: bool = field(default=False, metadata=field_options(alias="argocd"))

    def get_application(self, name: str) -> Application | None:
        return next((app for app in self.apps if app.name == name), None)

    def add_application(self, app: Application) -> Application:
        """Add the application, merging services into an existing one."""
        if (existing := self.get_application(app.name)) is None:
            existing = Application(name=app.name)
            self.apps.append(existing)
        for service in app.services:
            existing.add_service(service)
        return existing

    def update(self, other: "Environment") -> None:
        """Update this environment in place with values from another."""
        if other.pipelines is not None:
            self.pipelines = other.pipelines
        self.is_cicd = self.is_cicd or other.is_cicd
        self.is_argocd = self.is_argocd or other.is_argocd
        for app in other.apps:
            self.add_application(app)


@dataclass
class Manifest(BaseConfigDocument):
    """Holds the environments, applications and services of a GitOps repo."""

    environments: list[Environment] = field(default_factory=list)

    def get_environment(self, name: str) -> Environment | None:
        return next((env for env in self.environments if env.name == name), None)

    def add_environment(self, env: Environment) -> Environment:
        """Add the environment, or merge it into one with the same name."""
        if (existing := self.get_environment(env.name)) is None:
            existing = Environment(name=env.name)
            self.environments.append(existing)
        existing.update(env)
        return existing

    def merge(self, other: "Manifest") -> None:
        """Merge every environment of another manifest into this one."""
        for env in other.environments:
            self.add_environment(copy.deepcopy(env))

    @classmethod
    def parse_yaml(cls, content: str) -> "Manifest":
        """Parse a serialized manifest."""
        try:
            doc = yaml.safe_load(content)
        except yaml.YAMLError as err:
            raise InputException(f"Unable to parse manifest: {err}") from err
        if not isinstance(doc, dict):
            raise InputException(f"Invalid manifest, expected a mapping: {doc}")
        try:
            return cls.from_dict(doc)
        except (MissingField, InvalidFieldValue) as err:
            raise InputException(f"Invalid manifest: {err}") from err

    def yaml(self) -> str:
        """Return a YAML string representation of the manifest."""
        return yaml.dump(self.to_doc(), sort_keys=False)


async def read_manifest(manifest_path: Path) -> Manifest:
    """Return the contents of a serialized manifest file."""
    async with aiofiles.open(str(manifest_path)) as manifest_file:
        content = await manifest_file.read()
    if not content:
        raise InputException(f"Manifest file {manifest_path} is empty")
    return Manifest.parse_yaml(content)

