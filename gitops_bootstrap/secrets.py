"""Library for sealing secrets so they can be stored in a git repository.

Secrets are encrypted with the public key of the sealed-secrets controller
running in the cluster, and only the controller can decrypt them. The key is
supplied by a `PublicKeySource` so that tests and offline runs can use a
local key.

Example usage:
```
from gitops_bootstrap import secrets

sealer = secrets.SecretSealer(secrets.PemKeySource(cert_pem))
sealed = sealer.seal(NamespacedName("cicd", "webhook"), "key", "value")
```
"""

import base64
from collections.abc import Callable, Iterable
import logging
import os
from pathlib import Path
import struct

import aiofiles
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from mashumaro.exceptions import InvalidFieldValue, MissingField
import yaml

from .exceptions import SealingError
from .resources import (
    NamespacedName,
    ObjectMeta,
    SealedSecret,
    SealedSecretSpec,
    SecretTemplate,
)

__all__ = [
    "PublicKeySource",
    "Encryptor",
    "PemKeySource",
    "SecretSealer",
    "hybrid_encrypt",
    "read_sealed_secrets",
]

_LOGGER = logging.getLogger(__name__)

OPAQUE_SECRET = "Opaque"
DOCKER_CONFIG_JSON_SECRET = "kubernetes.io/dockerconfigjson"
DOCKER_CONFIG_JSON_KEY = ".dockerconfigjson"

SESSION_KEY_BYTES = 32

PublicKeySource = Callable[[], rsa.RSAPublicKey]
"""Returns the public key secrets are sealed with."""

Encryptor = Callable[[rsa.RSAPublicKey, bytes, bytes], bytes]
"""Encrypts a plaintext for a public key with the given label."""


def hybrid_encrypt(
    public_key: rsa.RSAPublicKey, plaintext: bytes, label: bytes
) -> bytes:
    """Encrypt the plaintext in the format used by the sealed-secrets controller.

    A random session key encrypts the plaintext with AES-GCM and the session
    key itself is encrypted with RSA-OAEP. The result is the length of the
    encrypted session key as two big-endian bytes, the encrypted session key,
    then the AES ciphertext.
    """
    session_key = os.urandom(SESSION_KEY_BYTES)
    encrypted_key = public_key.encrypt(
        session_key,
        padding.OAEP(
            mgf=padding.MGF1(algorithm=hashes.SHA256()),
            algorithm=hashes.SHA256(),
            label=label,
        ),
    )
    # The session key is never reused so a zero nonce is safe
    ciphertext = AESGCM(session_key).encrypt(b"\x00" * 12, plaintext, None)
    return struct.pack(">H", len(encrypted_key)) + encrypted_key + ciphertext


class PemKeySource:
    """Reads the public key from a PEM certificate or public key."""

    def __init__(self, pem: bytes) -> None:
        """Initialize PemKeySource."""
        self._pem = pem
        self._key: rsa.RSAPublicKey | None = None

    def __call__(self) -> rsa.RSAPublicKey:
        if self._key is None:
            self._key = self._load()
        return self._key

    def _load(self) -> rsa.RSAPublicKey:
        if not self._pem.strip():
            raise SealingError("Sealing certificate is empty")
        try:
            if b"CERTIFICATE" in self._pem:
                key = x509.load_pem_x509_certificate(self._pem).public_key()
            else:
                key = serialization.load_pem_public_key(self._pem)
        except ValueError as err:
            raise SealingError(f"Unable to parse sealing certificate: {err}") from err
        if not isinstance(key, rsa.RSAPublicKey):
            raise SealingError(
                f"Sealing key must be an RSA public key, got {type(key).__name__}"
            )
        return key


class SecretSealer:
    """Creates SealedSecret resources from plaintext values."""

    def __init__(
        self, key_source: PublicKeySource, encrypt: Encryptor = hybrid_encrypt
    ) -> None:
        """Initialize SecretSealer."""
        self._key_source = key_source
        self._encrypt = encrypt

    def _public_key(self) -> rsa.RSAPublicKey:
        try:
            return self._key_source()
        except SealingError:
            raise
        except Exception as err:
            raise SealingError(f"Failed to retrieve public key: {err}") from err

    def seal(
        self,
        name: NamespacedName,
        key: str,
        plaintext: str | bytes,
        secret_type: str = OPAQUE_SECRET,
    ) -> SealedSecret:
        """Return a SealedSecret holding the plaintext under `key`.

        The secret is sealed with strict scope, so it may only be unsealed
        with the same name and namespace.
        """
        if isinstance(plaintext, str):
            plaintext = plaintext.encode()
        if not plaintext:
            raise SealingError(f"Refusing to seal empty value for secret {name}")
        public_key = self._public_key()
        label = f"{name.namespace}/{name.name}".encode()
        try:
            ciphertext = self._encrypt(public_key, plaintext, label)
        except (ValueError, TypeError) as err:
            raise SealingError(f"Failed to seal secret {name}: {err}") from err
        _LOGGER.debug("Sealed secret %s key %s", name, key)
        return SealedSecret(
            metadata=ObjectMeta.from_name(name),
            spec=SealedSecretSpec(
                encrypted_data={key: base64.b64encode(ciphertext).decode()},
                template=SecretTemplate(
                    metadata=ObjectMeta.from_name(name), type=secret_type
                ),
            ),
        )


async def read_sealed_secrets(paths: Iterable[Path]) -> list[SealedSecret]:
    """Return the SealedSecrets written to the files by a previous run.

    Files holding any other kind of document are skipped. The values can't be
    read back, so a secret found here is reused as is instead of sealed again.
    """
    secrets = []
    for path in paths:
        try:
            async with aiofiles.open(str(path)) as secret_file:
                content = await secret_file.read()
            doc = yaml.safe_load(content)
        except (OSError, yaml.YAMLError) as err:
            raise SealingError(f"Unable to read sealed secret {path}: {err}") from err
        if not isinstance(doc, dict) or doc.get("kind") != SealedSecret.kind:
            _LOGGER.debug("Skipping %s, not a SealedSecret", path)
            continue
        try:
            secrets.append(SealedSecret.from_dict(doc))
        except (MissingField, InvalidFieldValue) as err:
            raise SealingError(f"Invalid sealed secret {path}: {err}") from err
    return secrets
