"""Shared fixtures for gitops-bootstrap tests."""

import hashlib

import pytest
from cryptography.hazmat.primitives.asymmetric import rsa

from gitops_bootstrap.bootstrap import BootstrapOptions, ServiceOptions
from gitops_bootstrap.secrets import SecretSealer


class FakeEncryptor:
    """Deterministic stand-in for the hybrid encryption of a sealed secret.

    The output depends on the label and plaintext, so the same inputs always
    produce the same sealed secret, but the plaintext can't be read back.
    """

    def __init__(self) -> None:
        self.labels: list[bytes] = []

    def __call__(
        self, public_key: rsa.RSAPublicKey, plaintext: bytes, label: bytes
    ) -> bytes:
        self.labels.append(label)
        return b"sealed:" + label + b":" + hashlib.sha256(plaintext).hexdigest().encode()


@pytest.fixture(scope="session")
def private_key() -> rsa.RSAPrivateKey:
    """RSA key pair standing in for the sealed-secrets controller."""
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture
def encryptor() -> FakeEncryptor:
    return FakeEncryptor()


@pytest.fixture
def sealer(private_key: rsa.RSAPrivateKey, encryptor: FakeEncryptor) -> SecretSealer:
    """A sealer producing deterministic output."""
    return SecretSealer(private_key.public_key, encrypt=encryptor)


@pytest.fixture
def service() -> ServiceOptions:
    return ServiceOptions(
        source_url="https://github.com/example/http-api.git",
        webhook_secret="456",
    )


@pytest.fixture
def options(service: ServiceOptions) -> BootstrapOptions:
    """Options for an external image repository without cluster checks."""
    return BootstrapOptions(
        prefix="tst-",
        gitops_repo_url="https://github.com/example/gitops.git",
        gitops_webhook_secret="123",
        image_repo="image/repo",
        docker_config_json='{"auths": {}}',
        services=(service,),
        skip_checks=True,
    )
