"""Signing identities and the filesystem credential stores holding them.

Two read-only layouts are supported:

- credential store (client/channel surface): ``<state_store>/<user>`` holds
  the user JSON and ``<crypto_store>/<signingIdentity>-priv`` the PEM key;
- wallet (gateway surface): ``<wallet>/<label>/<label>`` holds the same JSON
  and the key sits beside it in ``<wallet>/<label>/``.
"""

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.asymmetric.utils import (
    decode_dss_signature,
    encode_dss_signature,
)

from oemnet.infrastructure.fabric.errors import IdentityNotFoundError

logger = logging.getLogger(__name__)

# Group orders used for low-S signature normalisation
CURVE_ORDERS = {
    "secp256r1": 0xFFFFFFFF00000000FFFFFFFFFFFFFFFFBCE6FAADA7179E84F3B9CAC2FC632551,
    "secp384r1": int(
        "FFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFC7634D81F4372DDF"
        "581A0DB248B0A77AECEC196ACCC52973",
        16,
    ),
}

PRIVATE_KEY_SUFFIX = "-priv"


@dataclass
class Identity:
    """A user's signing identity."""

    name: str
    mspid: str
    certificate: str
    private_key: ec.EllipticCurvePrivateKey = field(repr=False)

    def serialize(self) -> bytes:
        """Serialized identity used as transaction creator."""
        return json.dumps(
            {"mspid": self.mspid, "certificate": self.certificate},
            sort_keys=True,
        ).encode("utf-8")

    def sign(self, data: bytes) -> bytes:
        """Sign data with ECDSA-SHA256, normalised to low-S form.

        Peers reject high-S signatures to rule out signature malleability.
        """
        der = self.private_key.sign(data, ec.ECDSA(hashes.SHA256()))
        order = CURVE_ORDERS.get(self.private_key.curve.name)
        if order is None:
            return der

        r, s = decode_dss_signature(der)
        if s > order // 2:
            s = order - s
        return encode_dss_signature(r, s)

    def verify(self, signature: bytes, data: bytes) -> bool:
        """Check a signature produced by this identity."""
        try:
            self.private_key.public_key().verify(
                signature, data, ec.ECDSA(hashes.SHA256())
            )
            return True
        except InvalidSignature:
            return False


def load_private_key(pem: bytes) -> ec.EllipticCurvePrivateKey:
    """Load a PEM encoded EC private key.

    Raises:
        ValueError: Key is not an unencrypted EC private key
    """
    key = serialization.load_pem_private_key(pem, password=None)
    if not isinstance(key, ec.EllipticCurvePrivateKey):
        raise ValueError("Only EC private keys are supported")
    return key


def _identity_from_user_json(
    data: dict[str, Any], key_dir: Path, default_name: str
) -> Identity:
    enrollment = data.get("enrollment") or {}
    signing_identity = enrollment.get("signingIdentity")
    certificate = (enrollment.get("identity") or {}).get("certificate")
    mspid = data.get("mspid")
    if not signing_identity or not certificate or not mspid:
        raise ValueError("User entry is missing mspid, certificate or signingIdentity")

    key_path = key_dir / f"{signing_identity}{PRIVATE_KEY_SUFFIX}"
    private_key = load_private_key(key_path.read_bytes())

    return Identity(
        name=data.get("name") or default_name,
        mspid=mspid,
        certificate=certificate,
        private_key=private_key,
    )


class CredentialStore:
    """Read-only filesystem credential store.

    Maps a user name to the identity material needed to sign proposals.
    """

    def __init__(self, state_store_path: str | Path, crypto_store_path: str | Path | None = None):
        """Initialize credential store.

        Args:
            state_store_path: Directory holding one JSON file per user
            crypto_store_path: Directory holding private keys
                              (defaults to the state store directory)
        """
        self.state_store_path = Path(state_store_path)
        self.crypto_store_path = Path(crypto_store_path or state_store_path)

    def _user_file(self, name: str) -> Path:
        return self.state_store_path / name

    def _key_dir(self, name: str) -> Path:
        return self.crypto_store_path

    def exists(self, name: str) -> bool:
        return self._user_file(name).is_file()

    def list_users(self) -> list[str]:
        """List user names present in the store."""
        if not self.state_store_path.is_dir():
            return []
        return sorted(
            p.name
            for p in self.state_store_path.iterdir()
            if p.is_file() and not p.name.endswith(PRIVATE_KEY_SUFFIX)
        )

    def get(self, name: str) -> Identity | None:
        """Load identity for a user.

        Returns:
            Identity, or None if the user is not in the store or its
            material cannot be loaded
        """
        user_file = self._user_file(name)
        if not user_file.is_file():
            logger.debug(f"No user file at {user_file}")
            return None

        try:
            data = json.loads(user_file.read_text(encoding="utf-8"))
            identity = _identity_from_user_json(data, self._key_dir(name), name)
        except (OSError, ValueError) as e:
            logger.error(f"Unable to load identity {name} from {self.state_store_path}: {e}")
            return None

        logger.debug(f"Loaded identity {name} ({identity.mspid})")
        return identity

    def require(self, name: str) -> Identity:
        """Load identity for a user or fail.

        Raises:
            IdentityNotFoundError: User is absent from the store
        """
        identity = self.get(name)
        if identity is None:
            raise IdentityNotFoundError(name, str(self.state_store_path))
        return identity


class FileSystemWallet(CredentialStore):
    """Wallet layout: one directory per identity label."""

    def __init__(self, path: str | Path):
        super().__init__(path, path)

    def _user_file(self, name: str) -> Path:
        return self.state_store_path / name / name

    def _key_dir(self, name: str) -> Path:
        return self.state_store_path / name

    def list_users(self) -> list[str]:
        if not self.state_store_path.is_dir():
            return []
        return sorted(
            p.name
            for p in self.state_store_path.iterdir()
            if p.is_dir() and (p / p.name).is_file()
        )
