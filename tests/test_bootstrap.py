"""Tests for building the resource tree of a bootstrap."""

import dataclasses

import pytest
import yaml
from cryptography.hazmat.primitives.asymmetric import rsa

from gitops_bootstrap.bootstrap import (
    BootstrapOptions,
    ManifestTreeBuilder,
    ServiceOptions,
    bootstrap,
)
from gitops_bootstrap.config import Manifest
from gitops_bootstrap.exceptions import (
    InputException,
    MalformedRepo,
    PreflightNotInstalled,
    SealingError,
)
from gitops_bootstrap.image_repo import DEFAULT_INTERNAL_REGISTRY, classify_image_repo
from gitops_bootstrap.naming import derive_namespaces
from gitops_bootstrap.resources import Kustomization, NamespacedName, SealedSecret
from gitops_bootstrap.secrets import SecretSealer
from gitops_bootstrap.serializer import serialize_tree
from gitops_bootstrap.tree import ResourceTree, validate_kustomizations

from .conftest import FakeEncryptor

PIPELINES_DIR = "environments/tst-cicd/base/pipelines"
SERVICE_DIR = "environments/tst-dev/services/http-api-svc/base/config"


def internal_options(options: BootstrapOptions) -> BootstrapOptions:
    return dataclasses.replace(
        options,
        image_repo="project/app",
        internal_registry_hostname=DEFAULT_INTERNAL_REGISTRY,
        docker_config_json=None,
    )


def test_bootstrap_external(options: BootstrapOptions, sealer: SecretSealer) -> None:
    """Test the files of a bootstrap with an external image repository."""
    tree = bootstrap(options, sealer)

    assert f"{PIPELINES_DIR}/01-namespaces/cicd-environment.yaml" in tree
    assert f"{PIPELINES_DIR}/03-secrets/github-webhook-secret-http-api-svc.yaml" in tree
    assert f"{SERVICE_DIR}/100-deployment.yaml" in tree
    assert f"{SERVICE_DIR}/200-service.yaml" in tree
    assert f"{SERVICE_DIR}/kustomization.yaml" in tree
    assert "environments/tst-dev/base/01-namespaces/dev-environment.yaml" in tree
    assert "environments/tst-argocd/base/01-namespaces/argocd-environment.yaml" in tree

    cicd = tree.kustomization(PIPELINES_DIR)
    assert cicd.resources == [
        "01-namespaces/cicd-environment.yaml",
        "02-rolebindings/pipeline-service-account.yaml",
        "02-rolebindings/pipeline-service-role.yaml",
        "02-rolebindings/pipeline-service-rolebinding.yaml",
        "02-rolebindings/edit-clusterrole-binding.yaml",
        "03-secrets/docker-config.yaml",
        "03-secrets/gitops-webhook-secret.yaml",
        "04-tasks/deploy-from-source-task.yaml",
        "04-tasks/deploy-using-kubectl-task.yaml",
        "05-pipelines/app-ci-pipeline.yaml",
        "05-pipelines/ci-dryrun-from-pr-pipeline.yaml",
        "06-bindings/github-pr-binding.yaml",
        "07-templates/app-ci-template.yaml",
        "07-templates/ci-dryrun-from-pr-template.yaml",
        "08-eventlisteners/cicd-event-listener.yaml",
        "09-routes/gitops-webhook-event-listener.yaml",
        "03-secrets/github-webhook-secret-http-api-svc.yaml",
    ]
    assert tree.kustomization("environments/tst-stage/base").resources == [
        "01-namespaces/stage-environment.yaml",
        "02-rolebindings/pipeline-admin-rolebinding.yaml",
    ]
    assert tree.kustomization("environments/tst-argocd/base").resources == [
        "01-namespaces/argocd-environment.yaml",
    ]

    sa = tree[f"{PIPELINES_DIR}/02-rolebindings/pipeline-service-account.yaml"]
    assert sa.to_doc()["secrets"] == [{"name": "regcred"}]
    template = tree[f"{PIPELINES_DIR}/07-templates/app-ci-template.yaml"].to_doc()
    params = template["spec"]["resourcetemplates"][0]["spec"]["params"]
    assert {"name": "TLSVERIFY", "value": "true"} in params

    deployment = tree[f"{SERVICE_DIR}/100-deployment.yaml"].to_doc()
    assert deployment["metadata"] == {
        "name": "http-api-svc",
        "namespace": "tst-dev",
        "labels": {
            "app.kubernetes.io/name": "http-api-svc",
            "app.kubernetes.io/part-of": "http-api",
        },
    }


def test_bootstrap_manifest(options: BootstrapOptions, sealer: SecretSealer) -> None:
    """Test the manifest descriptor written with the tree."""
    tree = bootstrap(options, sealer)
    manifest = tree["pipelines.yaml"]
    assert isinstance(manifest, Manifest)
    assert [env.name for env in manifest.environments] == [
        "tst-dev",
        "tst-stage",
        "tst-cicd",
        "tst-argocd",
    ]
    cicd = manifest.get_environment("tst-cicd")
    assert cicd is not None
    assert cicd.is_cicd
    argocd = manifest.get_environment("tst-argocd")
    assert argocd is not None
    assert argocd.is_argocd

    dev = manifest.get_environment("tst-dev")
    assert dev is not None
    assert dev.pipelines is not None
    assert dev.pipelines.integration is not None
    assert dev.pipelines.integration.template == "app-ci-template"
    app = dev.get_application("http-api")
    assert app is not None
    service = app.get_service("http-api-svc")
    assert service is not None
    assert service.source_url == "https://github.com/example/http-api.git"
    assert service.webhook is not None
    assert service.webhook.secret.name == "github-webhook-secret-http-api-svc"


def test_bootstrap_internal(options: BootstrapOptions, sealer: SecretSealer) -> None:
    """Test the internal registry namespace is created and bound."""
    tree = bootstrap(internal_options(options), sealer)
    assert f"{PIPELINES_DIR}/01-namespaces/project.yaml" in tree
    binding = tree[f"{PIPELINES_DIR}/02-rolebindings/internal-registry-binding.yaml"]
    assert binding.to_doc()["metadata"] == {
        "name": "internal-registry-binding",
        "namespace": "project",
    }
    template = tree[f"{PIPELINES_DIR}/07-templates/app-ci-template.yaml"].to_doc()
    params = template["spec"]["resourcetemplates"][0]["spec"]["params"]
    assert {"name": "TLSVERIFY", "value": "false"} in params
    assert {
        "name": "IMAGE",
        "value": (
            f"{DEFAULT_INTERNAL_REGISTRY}/project/app:"
            "$(tt.params.gitref)-$(tt.params.gitsha)"
        ),
    } in params


def test_internal_namespace_exists(
    options: BootstrapOptions, sealer: SecretSealer
) -> None:
    """An existing internal registry namespace is not created."""
    queried = []

    def namespace_exists(name: str) -> bool:
        queried.append(name)
        return True

    tree = bootstrap(internal_options(options), sealer, namespace_exists=namespace_exists)
    assert queried == ["project"]
    assert f"{PIPELINES_DIR}/01-namespaces/project.yaml" not in tree
    assert f"{PIPELINES_DIR}/02-rolebindings/internal-registry-binding.yaml" in tree


def test_internal_registry_in_environment(
    options: BootstrapOptions, sealer: SecretSealer
) -> None:
    """Images may be pushed to one of the environment namespaces."""
    tree = bootstrap(
        dataclasses.replace(internal_options(options), image_repo="tst-cicd/app"),
        sealer,
    )
    assert f"{PIPELINES_DIR}/01-namespaces/tst-cicd.yaml" not in tree


@pytest.mark.parametrize(
    ("image_repo", "hostname"),
    [
        ("image/repo", ""),
        ("quay.io/example/app", DEFAULT_INTERNAL_REGISTRY),
        ("project/app", DEFAULT_INTERNAL_REGISTRY),
        (f"{DEFAULT_INTERNAL_REGISTRY}/project/app", DEFAULT_INTERNAL_REGISTRY),
    ],
    ids=["short-external", "external", "internal-short", "internal-full"],
)
def test_registry_access_exclusive(
    options: BootstrapOptions, sealer: SecretSealer, image_repo: str, hostname: str
) -> None:
    """Exactly one of the internal binding and the pull secret is present."""
    tree = bootstrap(
        dataclasses.replace(
            options, image_repo=image_repo, internal_registry_hostname=hostname
        ),
        sealer,
    )
    is_internal = classify_image_repo(image_repo, hostname).is_internal
    internal = f"{PIPELINES_DIR}/02-rolebindings/internal-registry-binding.yaml" in tree
    external = f"{PIPELINES_DIR}/03-secrets/docker-config.yaml" in tree
    assert internal == is_internal
    assert external != is_internal


def test_external_requires_credentials(
    options: BootstrapOptions, sealer: SecretSealer
) -> None:
    """Test the registry credentials are required for an external registry."""
    with pytest.raises(SealingError, match="regcred"):
        bootstrap(dataclasses.replace(options, docker_config_json=None), sealer)


@pytest.mark.parametrize(
    "image_repo", ["a/b/c/d", "repo", "quay.io/example"], ids=["four", "one", "two"]
)
def test_malformed_repo(
    options: BootstrapOptions,
    sealer: SecretSealer,
    encryptor: FakeEncryptor,
    image_repo: str,
) -> None:
    """A malformed image repository aborts before anything is sealed."""
    with pytest.raises(MalformedRepo):
        bootstrap(dataclasses.replace(options, image_repo=image_repo), sealer)
    assert encryptor.labels == []


def test_preflight_not_installed(
    options: BootstrapOptions, sealer: SecretSealer, encryptor: FakeEncryptor
) -> None:
    """Test the bootstrap fails when Tekton is not installed."""
    with pytest.raises(PreflightNotInstalled, match="not installed"):
        bootstrap(
            dataclasses.replace(options, skip_checks=False),
            sealer,
            install_checker=lambda: False,
        )
    assert encryptor.labels == []


def test_preflight_installed(options: BootstrapOptions, sealer: SecretSealer) -> None:
    """Test the bootstrap runs when Tekton is installed."""
    tree = bootstrap(
        dataclasses.replace(options, skip_checks=False),
        sealer,
        install_checker=lambda: True,
    )
    assert len(tree) > 0


def test_preflight_requires_checker(
    options: BootstrapOptions, sealer: SecretSealer
) -> None:
    """Test checks can't silently be skipped."""
    with pytest.raises(InputException, match="installation checker"):
        bootstrap(dataclasses.replace(options, skip_checks=False), sealer)


def test_seal_once(
    options: BootstrapOptions, sealer: SecretSealer, encryptor: FakeEncryptor
) -> None:
    """Every secret is sealed exactly once."""
    service = options.services[0]
    bootstrap(dataclasses.replace(options, services=(service, service)), sealer)
    assert sorted(encryptor.labels) == [
        b"tst-cicd/github-webhook-secret-http-api-svc",
        b"tst-cicd/gitops-webhook-secret",
        b"tst-cicd/regcred",
    ]


def test_idempotent_with_new_service(
    options: BootstrapOptions, sealer: SecretSealer
) -> None:
    """Adding a service only adds its own files to the previous output."""
    first = dict(serialize_tree(bootstrap(options, sealer)))
    frontend = ServiceOptions(
        source_url="https://github.com/example/frontend.git", webhook_secret="789"
    )
    second = dict(
        serialize_tree(
            bootstrap(
                dataclasses.replace(options, services=options.services + (frontend,)),
                sealer,
            )
        )
    )

    changed = {path for path in first if first[path] != second[path]}
    assert changed == {f"{PIPELINES_DIR}/kustomization.yaml", "pipelines.yaml"}
    assert set(second) - set(first) == {
        f"{PIPELINES_DIR}/03-secrets/github-webhook-secret-frontend-svc.yaml",
        "environments/tst-dev/services/frontend-svc/base/config/100-deployment.yaml",
        "environments/tst-dev/services/frontend-svc/base/config/200-service.yaml",
        "environments/tst-dev/services/frontend-svc/base/config/kustomization.yaml",
    }
    assert second[f"{PIPELINES_DIR}/kustomization.yaml"].startswith(
        first[f"{PIPELINES_DIR}/kustomization.yaml"].rstrip("\n")
    )


def test_rerun_keeps_sealed_secrets(
    options: BootstrapOptions, private_key: rsa.RSAPrivateKey
) -> None:
    """Running again with the secrets of the previous output reuses them."""
    sealer = SecretSealer(private_key.public_key)
    first_tree = bootstrap(options, sealer)
    first = dict(serialize_tree(first_tree))
    previous_secrets = [
        SealedSecret.from_dict(yaml.safe_load(content))
        for path, content in first.items()
        if "/03-secrets/" in path
    ]
    assert len(previous_secrets) == 3
    base = first_tree["pipelines.yaml"]
    assert isinstance(base, Manifest)

    frontend = ServiceOptions(
        source_url="https://github.com/example/frontend.git", webhook_secret="789"
    )
    second = dict(
        serialize_tree(
            bootstrap(
                dataclasses.replace(options, services=options.services + (frontend,)),
                sealer,
                base_manifest=base,
                previous_secrets=previous_secrets,
            )
        )
    )

    changed = {path for path in first if first[path] != second[path]}
    assert changed == {f"{PIPELINES_DIR}/kustomization.yaml", "pipelines.yaml"}
    assert f"{PIPELINES_DIR}/03-secrets/github-webhook-secret-frontend-svc.yaml" in (
        second
    )


def test_previous_secrets_not_sealed_again(
    options: BootstrapOptions, sealer: SecretSealer, encryptor: FakeEncryptor
) -> None:
    """Only secrets missing from the previous output are sealed."""
    first = bootstrap(options, sealer)
    previous = [
        doc
        for doc in first.resources()
        if isinstance(doc, SealedSecret) and doc.metadata.name != "regcred"
    ]
    encryptor.labels.clear()
    bootstrap(options, sealer, previous_secrets=previous)
    assert encryptor.labels == [b"tst-cicd/regcred"]


def test_previous_secret_with_other_key(
    options: BootstrapOptions,
    sealer: SecretSealer,
    encryptor: FakeEncryptor,
    private_key: rsa.RSAPrivateKey,
) -> None:
    """A previous secret holding a different key is sealed again."""
    previous = SecretSealer(private_key.public_key).seal(
        NamespacedName("tst-cicd", "gitops-webhook-secret"), "other-key", "123"
    )
    tree = bootstrap(options, sealer, previous_secrets=[previous])
    assert b"tst-cicd/gitops-webhook-secret" in encryptor.labels
    secret = tree[f"{PIPELINES_DIR}/03-secrets/gitops-webhook-secret.yaml"].to_doc()
    assert list(secret["spec"]["encryptedData"]) == ["webhook-secret-key"]


def test_merge_base_manifest(options: BootstrapOptions, sealer: SecretSealer) -> None:
    """Services of a previous bootstrap are kept in the manifest."""
    first = bootstrap(options, sealer)
    base = first["pipelines.yaml"]
    assert isinstance(base, Manifest)

    frontend = ServiceOptions(
        source_url="https://github.com/example/frontend.git",
        webhook_secret="789",
        environment="stage",
    )
    tree = bootstrap(
        dataclasses.replace(options, services=(frontend,)), sealer, base_manifest=base
    )
    manifest = tree["pipelines.yaml"]
    assert isinstance(manifest, Manifest)
    assert [env.name for env in manifest.environments] == [
        "tst-dev",
        "tst-stage",
        "tst-cicd",
        "tst-argocd",
    ]
    dev = manifest.get_environment("tst-dev")
    stage = manifest.get_environment("tst-stage")
    assert dev is not None and stage is not None
    assert [app.name for app in dev.apps] == ["http-api"]
    assert [app.name for app in stage.apps] == ["frontend"]
    assert (
        "environments/tst-stage/services/frontend-svc/base/config/100-deployment.yaml"
        in tree
    )

    # The secret of the previous service is still listed but not rewritten
    previous_secret = "03-secrets/github-webhook-secret-http-api-svc.yaml"
    assert f"{PIPELINES_DIR}/{previous_secret}" not in tree
    assert tree.existing() == [f"{PIPELINES_DIR}/{previous_secret}"]
    assert tree.kustomization(PIPELINES_DIR).resources[-2:] == [
        "03-secrets/github-webhook-secret-frontend-svc.yaml",
        previous_secret,
    ]


def test_service_names(options: BootstrapOptions, sealer: SecretSealer) -> None:
    """Test overriding the application and service names."""
    service = ServiceOptions(
        source_url="git@github.com:example/http-api.git",
        webhook_secret="456",
        app_name="shop",
        service_name="api",
    )
    tree = bootstrap(dataclasses.replace(options, services=(service,)), sealer)
    deployment = tree["environments/tst-dev/services/api/base/config/100-deployment.yaml"]
    assert deployment.to_doc()["metadata"]["labels"]["app.kubernetes.io/part-of"] == "shop"
    assert f"{PIPELINES_DIR}/03-secrets/github-webhook-secret-api.yaml" in tree


@pytest.mark.parametrize(
    ("service", "match"),
    [
        (
            ServiceOptions("https://github.com/example/api.git", "1", environment="cicd"),
            "may only be added",
        ),
        (
            ServiceOptions("https://github.com/example/api.git", "1", service_name="A"),
            "Invalid service name",
        ),
        (ServiceOptions("https://github.com/api", "1"), "Invalid repository URL"),
    ],
    ids=["cicd-environment", "invalid-name", "invalid-url"],
)
def test_invalid_service(
    options: BootstrapOptions,
    sealer: SecretSealer,
    service: ServiceOptions,
    match: str,
) -> None:
    """Test services that can't be added."""
    with pytest.raises(InputException, match=match):
        bootstrap(dataclasses.replace(options, services=(service,)), sealer)


def test_invalid_prefix(options: BootstrapOptions, sealer: SecretSealer) -> None:
    """Test a prefix that does not produce valid namespaces."""
    with pytest.raises(InputException, match="Invalid namespace name"):
        bootstrap(dataclasses.replace(options, prefix="Tst_"), sealer)


def test_builder_stage_order(sealer: SecretSealer) -> None:
    """Registry access needs the service account of the rbac stage."""
    builder = ManifestTreeBuilder(
        derive_namespaces("tst-"),
        classify_image_repo("project/app", DEFAULT_INTERNAL_REGISTRY),
        sealer,
    )
    with pytest.raises(InputException, match="service account"):
        builder.add_registry_access()


def test_builder_without_services(sealer: SecretSealer) -> None:
    """A tree without services is complete and consistent."""
    builder = ManifestTreeBuilder(
        derive_namespaces("tst-"),
        classify_image_repo("project/app", DEFAULT_INTERNAL_REGISTRY),
        sealer,
    )
    builder.add_namespaces()
    builder.add_rbac()
    builder.add_registry_access(namespace_exists=lambda name: False)
    builder.add_gitops_webhook_secret("123")
    builder.add_pipelines("https://github.com/example/gitops.git")
    tree = builder.build()
    assert isinstance(tree, ResourceTree)
    assert "pipelines.yaml" in tree
    assert not any("/services/" in path for path in tree)
    validate_kustomizations(tree)
    for directory in tree.kustomization_dirs():
        assert isinstance(tree.kustomization(directory), Kustomization)


def test_long_prefix(options: BootstrapOptions, sealer: SecretSealer) -> None:
    """Namespaces are limited to the length of a DNS label."""
    with pytest.raises(InputException, match="at most 63 characters"):
        bootstrap(dataclasses.replace(options, prefix="a" * 60 + "-"), sealer)


@pytest.mark.parametrize(
    "image_repo",
    ["Project/app", f"{DEFAULT_INTERNAL_REGISTRY}/my_project/app"],
    ids=["uppercase", "underscore"],
)
def test_invalid_internal_registry_namespace(
    options: BootstrapOptions,
    sealer: SecretSealer,
    encryptor: FakeEncryptor,
    image_repo: str,
) -> None:
    """The internal registry namespace must be a valid namespace name."""
    with pytest.raises(InputException, match="Invalid image repository namespace"):
        bootstrap(
            dataclasses.replace(internal_options(options), image_repo=image_repo),
            sealer,
        )
    assert encryptor.labels == []
