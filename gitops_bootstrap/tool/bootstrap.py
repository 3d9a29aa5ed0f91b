"""gitops-bootstrap bootstrap action."""

from argparse import (
    ArgumentParser,
    _SubParsersAction as SubParsersAction,
)
import logging
import pathlib
import sys
from typing import cast

import aiofiles

from gitops_bootstrap import cluster, serializer
from gitops_bootstrap.bootstrap import (
    ENVIRONMENTS_DIR,
    SECRETS_DIR,
    BootstrapOptions,
    ServiceOptions,
    bootstrap,
    check_install,
)
from gitops_bootstrap.config import MANIFEST_FILE, Manifest, read_manifest
from gitops_bootstrap.exceptions import InputException
from gitops_bootstrap.image_repo import DEFAULT_INTERNAL_REGISTRY, classify_image_repo
from gitops_bootstrap.resources import SealedSecret
from gitops_bootstrap.secrets import PemKeySource, SecretSealer, read_sealed_secrets

_LOGGER = logging.getLogger(__name__)

STDOUT = "-"
DEFAULT_DOCKER_CONFIG = "~/.docker/config.json"

# Sealed secrets of the pipelines directory written by a previous run
PREVIOUS_SECRETS_GLOB = f"{ENVIRONMENTS_DIR}/*/base/pipelines/{SECRETS_DIR}/*.yaml"


async def _read_file(path: pathlib.Path, description: str) -> bytes:
    try:
        async with aiofiles.open(str(path), mode="rb") as input_file:
            return await input_file.read()
    except OSError as err:
        raise InputException(f"Unable to read {description} {path}: {err}") from err


class BootstrapAction:
    """gitops-bootstrap bootstrap action."""

    @classmethod
    def register(
        cls, subparsers: SubParsersAction  # type: ignore[type-arg]
    ) -> ArgumentParser:
        """Register the subparser commands."""
        args = cast(
            ArgumentParser,
            subparsers.add_parser(
                "bootstrap",
                help="Bootstrap the resources of a GitOps repository",
                description="""Generates the namespaces, roles, sealed secrets,
                    Tekton pipelines and triggers, and application services
                    needed to drive a cluster from a GitOps repository.""",
            ),
        )
        args.add_argument(
            "--prefix",
            type=str,
            default="",
            help="Prefix added to the namespace of every environment",
        )
        args.add_argument(
            "--gitops-repo-url",
            type=str,
            required=True,
            help="URL of the GitOps repository",
        )
        args.add_argument(
            "--gitops-webhook-secret",
            type=str,
            required=True,
            help="Secret used to validate webhooks from the GitOps repository",
        )
        args.add_argument(
            "--app-repo-url",
            type=str,
            help="URL of the source repository of an application service",
        )
        args.add_argument(
            "--app-webhook-secret",
            type=str,
            help="Secret used to validate webhooks from the application repository",
        )
        args.add_argument(
            "--image-repo",
            type=str,
            required=True,
            help=(
                "Image repository in the form <registry>/<username>/<repository> "
                "or <project>/<app> for the internal registry"
            ),
        )
        args.add_argument(
            "--internal-registry-hostname",
            type=str,
            default=DEFAULT_INTERNAL_REGISTRY,
            help="Hostname of the internal image registry",
        )
        args.add_argument(
            "--dockercfgjson",
            type=str,
            default=DEFAULT_DOCKER_CONFIG,
            help="Path to the registry credentials for an external image repository",
        )
        args.add_argument(
            "--sealing-cert",
            type=pathlib.Path,
            help=(
                "Path to the PEM certificate secrets are sealed with, fetched from "
                "the sealed-secrets controller if not set"
            ),
        )
        args.add_argument(
            "--sealed-secrets-controller",
            type=str,
            default=cluster.DEFAULT_CONTROLLER_NAME,
            help="Name of the sealed-secrets controller",
        )
        args.add_argument(
            "--sealed-secrets-namespace",
            type=str,
            default=cluster.DEFAULT_CONTROLLER_NAMESPACE,
            help="Namespace of the sealed-secrets controller",
        )
        args.add_argument(
            "--output",
            type=str,
            required=True,
            help=f"Directory the resources are written to, or '{STDOUT}' for stdout",
        )
        args.add_argument(
            "--skip-checks",
            action="store_true",
            help="Skip checking the cluster for a Tekton installation",
        )
        args.set_defaults(cls=cls)
        return args

    async def run(  # type: ignore[no-untyped-def]
        self,
        prefix: str,
        gitops_repo_url: str,
        gitops_webhook_secret: str,
        app_repo_url: str | None,
        app_webhook_secret: str | None,
        image_repo: str,
        internal_registry_hostname: str,
        dockercfgjson: str,
        sealing_cert: pathlib.Path | None,
        sealed_secrets_controller: str,
        sealed_secrets_namespace: str,
        output: str,
        skip_checks: bool,
        **kwargs,  # pylint: disable=unused-argument
    ) -> None:
        """Async Action implementation."""
        services: tuple[ServiceOptions, ...] = ()
        if app_repo_url:
            if not app_webhook_secret:
                raise InputException(
                    "--app-webhook-secret is required with --app-repo-url"
                )
            services = (ServiceOptions(app_repo_url, app_webhook_secret),)

        install_checker = None
        namespace_exists = None
        if not skip_checks:
            api_client = cluster.load_api_client()
            install_checker = cluster.TektonInstallChecker(api_client)
            namespace_exists = cluster.NamespaceQuery(api_client)
            check_install(install_checker)

        decision = classify_image_repo(image_repo, internal_registry_hostname)
        docker_config: str | None = None
        if not decision.is_internal:
            dockercfg_path = pathlib.Path(dockercfgjson).expanduser()
            content = await _read_file(dockercfg_path, "registry credentials")
            try:
                docker_config = content.decode()
            except UnicodeDecodeError as err:
                raise InputException(
                    f"Invalid registry credentials {dockercfg_path}: {err}"
                ) from err

        if sealing_cert:
            cert = await _read_file(sealing_cert, "sealing certificate")
        else:
            cert = await cluster.fetch_certificate(
                sealed_secrets_controller, sealed_secrets_namespace
            )

        base_manifest: Manifest | None = None
        previous_secrets: list[SealedSecret] = []
        sink: serializer.Sink
        if output == STDOUT:
            sink = serializer.StreamSink(sys.stdout)
        else:
            output_dir = pathlib.Path(output)
            if (manifest_path := output_dir / MANIFEST_FILE).exists():
                _LOGGER.info("Merging with existing manifest %s", manifest_path)
                base_manifest = await read_manifest(manifest_path)
            previous_secrets = await read_sealed_secrets(
                sorted(output_dir.glob(PREVIOUS_SECRETS_GLOB))
            )
            sink = serializer.DirectorySink(output_dir)

        options = BootstrapOptions(
            prefix=prefix,
            gitops_repo_url=gitops_repo_url,
            gitops_webhook_secret=gitops_webhook_secret,
            image_repo=image_repo,
            internal_registry_hostname=internal_registry_hostname,
            docker_config_json=docker_config,
            services=services,
            skip_checks=skip_checks,
        )
        tree = bootstrap(
            options,
            SecretSealer(PemKeySource(cert)),
            install_checker=install_checker,
            namespace_exists=namespace_exists,
            base_manifest=base_manifest,
            previous_secrets=previous_secrets,
        )
        count = await serializer.write_tree(tree, sink)
        _LOGGER.info("Wrote %d files", count)
