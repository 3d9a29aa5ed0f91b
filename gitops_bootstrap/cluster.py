"""Queries against the cluster a bootstrap is created for.

The resource tree is built without talking to the cluster. These adapters
answer the few questions a bootstrap asks of it: whether Tekton is installed,
whether a namespace exists, and the certificate of the sealed-secrets
controller.
"""

import logging

from kubernetes import client, config
from kubernetes.client.rest import ApiException
from kubernetes.config.config_exception import ConfigException
from urllib3.exceptions import MaxRetryError

from . import command
from .exceptions import ClusterQueryError, CommandException

__all__ = [
    "load_api_client",
    "TektonInstallChecker",
    "NamespaceQuery",
    "fetch_certificate",
]

_LOGGER = logging.getLogger(__name__)

KUBESEAL_BIN = "kubeseal"
DEFAULT_CONTROLLER_NAME = "sealed-secrets-controller"
DEFAULT_CONTROLLER_NAMESPACE = "kube-system"

TEKTON_CRDS = (
    "pipelines.tekton.dev",
    "tasks.tekton.dev",
    "eventlisteners.triggers.tekton.dev",
    "triggerbindings.triggers.tekton.dev",
    "triggertemplates.triggers.tekton.dev",
)


def load_api_client(context: str | None = None) -> client.ApiClient:
    """Return a client for the current kubeconfig context or the pod's cluster."""
    try:
        config.load_kube_config(context=context)
    except ConfigException as err:
        _LOGGER.debug("Unable to load kubeconfig, trying in-cluster config: %s", err)
        try:
            config.load_incluster_config()
        except ConfigException as incluster_err:
            raise ClusterQueryError(
                f"Invalid or missing kubeconfig: {err}"
            ) from incluster_err
    return client.ApiClient()


def _query_error(what: str, err: Exception) -> ClusterQueryError:
    if isinstance(err, MaxRetryError):
        return ClusterQueryError(f"Failed to connect to the cluster: {err.reason}")
    return ClusterQueryError(f"Failed to query {what}: {err}")


class TektonInstallChecker:
    """Checks that the Tekton Pipelines and Triggers CRDs are installed.

    The cluster is queried once and the result is reused by later calls.
    """

    def __init__(self, api_client: client.ApiClient | None = None) -> None:
        """Initialize TektonInstallChecker."""
        self._api = client.ApiextensionsV1Api(api_client)
        self._installed: bool | None = None

    def __call__(self) -> bool:
        if self._installed is None:
            self._installed = self._check()
        return self._installed

    def _check(self) -> bool:
        for crd in TEKTON_CRDS:
            try:
                self._api.read_custom_resource_definition(crd)
            except ApiException as err:
                if err.status == 404:
                    _LOGGER.info("CustomResourceDefinition %s is not installed", crd)
                    return False
                raise _query_error(f"CustomResourceDefinition {crd}", err) from err
            except MaxRetryError as err:
                raise _query_error(f"CustomResourceDefinition {crd}", err) from err
        return True


class NamespaceQuery:
    """Checks whether a namespace exists in the cluster."""

    def __init__(self, api_client: client.ApiClient | None = None) -> None:
        """Initialize NamespaceQuery."""
        self._api = client.CoreV1Api(api_client)

    def __call__(self, name: str) -> bool:
        try:
            self._api.read_namespace(name)
        except ApiException as err:
            if err.status == 404:
                return False
            raise _query_error(f"namespace {name}", err) from err
        except MaxRetryError as err:
            raise _query_error(f"namespace {name}", err) from err
        return True


async def fetch_certificate(
    controller_name: str = DEFAULT_CONTROLLER_NAME,
    controller_namespace: str = DEFAULT_CONTROLLER_NAMESPACE,
    kubeseal_bin: str = KUBESEAL_BIN,
) -> bytes:
    """Return the PEM certificate of the sealed-secrets controller."""
    cmd = command.Command(
        [
            kubeseal_bin,
            "--fetch-cert",
            "--controller-name",
            controller_name,
            "--controller-namespace",
            controller_namespace,
        ],
        exc=CommandException,
    )
    cert = await command.run(cmd)
    if not cert.strip():
        raise ClusterQueryError(
            f"Controller {controller_namespace}/{controller_name} returned "
            "an empty certificate"
        )
    return cert
