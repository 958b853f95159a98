"""
Artifact signing.

Each artifact's SHA-256 digest is signed with an Ed25519 key so a
consumer can verify that a published artifact was produced by this system
and not altered afterwards.
"""

import base64
import hashlib
import logging
from pathlib import Path
from typing import TYPE_CHECKING, Optional, Union

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey, Ed25519PublicKey
from pydantic import BaseModel, ConfigDict

from ..exceptions import ConfigurationError

if TYPE_CHECKING:
    from . import Artifact

logger = logging.getLogger(__name__)

ALGORITHM = "Ed25519"


class ArtifactSignature(BaseModel):
    """Detached signature for one artifact."""

    model_config = ConfigDict(frozen=True)

    name: str
    revision: int
    digest: str
    algorithm: str = ALGORITHM
    public_key_id: str
    signature: str  # base64


def calculate_key_id(public_key: Ed25519PublicKey) -> str:
    """Short key id from the SubjectPublicKeyInfo PEM of a public key."""
    public_bytes = public_key.public_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    )
    return hashlib.sha256(public_bytes).hexdigest()[:16]


class ArtifactSigner:
    """
    Signs and verifies artifacts.

    Usage:
        signer = ArtifactSigner.from_pem_file("keys/ksiwatch.pem")
        signature = signer.sign(artifact)
        assert signer.verify(artifact, signature)
    """

    def __init__(self, private_key: Ed25519PrivateKey):
        self._private_key = private_key
        self.public_key = private_key.public_key()
        self.key_id = calculate_key_id(self.public_key)

    @classmethod
    def generate(cls) -> "ArtifactSigner":
        return cls(Ed25519PrivateKey.generate())

    @classmethod
    def from_pem(cls, data: bytes, password: Optional[bytes] = None) -> "ArtifactSigner":
        """
        Load an Ed25519 private key from PEM bytes.

        Raises:
            ConfigurationError: If the PEM is invalid or not an Ed25519 key
        """
        try:
            key = serialization.load_pem_private_key(data, password=password)
        except (ValueError, TypeError) as e:
            raise ConfigurationError(f"Invalid signing key: {e}") from e
        if not isinstance(key, Ed25519PrivateKey):
            raise ConfigurationError(f"Signing key must be Ed25519, got {type(key).__name__}")
        return cls(key)

    @classmethod
    def from_pem_file(cls, path: Union[str, Path], password: Optional[bytes] = None) -> "ArtifactSigner":
        key_path = Path(path)
        if not key_path.is_file():
            raise ConfigurationError(f"Signing key not found: {key_path}")
        return cls.from_pem(key_path.read_bytes(), password)

    def private_key_pem(self) -> bytes:
        return self._private_key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=serialization.NoEncryption(),
        )

    def public_key_pem(self) -> bytes:
        return self.public_key.public_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PublicFormat.SubjectPublicKeyInfo,
        )

    def sign(self, artifact: "Artifact") -> ArtifactSignature:
        digest = artifact.digest
        signature = self._private_key.sign(digest.encode("ascii"))
        return ArtifactSignature(
            name=artifact.name,
            revision=artifact.revision,
            digest=digest,
            public_key_id=self.key_id,
            signature=base64.b64encode(signature).decode("ascii"),
        )

    def verify(self, artifact: "Artifact", signature: ArtifactSignature) -> bool:
        """
        Check a detached signature against an artifact.

        Returns:
            False if the key id, digest or signature does not match
        """
        if signature.public_key_id != self.key_id:
            logger.warning("Signature for %s made with unknown key %s", artifact.name, signature.public_key_id)
            return False
        if signature.digest != artifact.digest:
            return False
        try:
            self.public_key.verify(base64.b64decode(signature.signature), artifact.digest.encode("ascii"))
        except (InvalidSignature, ValueError):
            return False
        return True
