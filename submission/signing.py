"""
Case Signing — Detached Ed25519 Signatures over Case Records

THIS MODULE DEFINES NO COMMANDS.

Responsibilities:
- Load the key pair provisioned at install time
- Sign the canonical serialization of a finalized case record
- Verify signatures (any change to the record after signing fails)

Keys and signatures travel as lowercase hex. Key provisioning itself
happens outside this package; `save()` exists for that tooling and tests.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Optional

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey, Ed25519PublicKey
from cryptography.hazmat.primitives.serialization import Encoding, NoEncryption, PrivateFormat, PublicFormat

from court.errors import SigningKeyError
from court.models import CaseRecord
from state.config import courtroom_home

logger = logging.getLogger(__name__)

KEYS_FILE_NAME = "courtroom_keys.json"
SEED_HEX_LENGTH = 64


def default_keys_path() -> Path:
    return courtroom_home() / KEYS_FILE_NAME


class CaseSigner:
    def __init__(self, private_key: Ed25519PrivateKey) -> None:
        self._private_key = private_key
        self._public_key = private_key.public_key()

    @classmethod
    def generate(cls) -> "CaseSigner":
        return cls(Ed25519PrivateKey.generate())

    @classmethod
    def from_key_file(cls, path: Optional[Path] = None) -> "CaseSigner":
        """
        Load `{"public_key": hex, "secret_key": hex}`.
        The secret may be the 32-byte seed or the 64-byte seed+public form.
        """
        path = Path(path) if path is not None else default_keys_path()
        try:
            with path.open("r", encoding="utf-8") as handle:
                stored = json.load(handle)
            seed = bytes.fromhex(stored["secret_key"][:SEED_HEX_LENGTH])
            signer = cls(Ed25519PrivateKey.from_private_bytes(seed))
        except (OSError, json.JSONDecodeError, KeyError, TypeError, ValueError) as exc:
            raise SigningKeyError(f"Could not load signing keys from {path}: {exc}") from exc
        expected = stored.get("public_key")
        if expected and expected.lower() != signer.public_key:
            raise SigningKeyError(f"Public key in {path} does not match its secret key")
        logger.info("Loaded case signing key %s…", signer.public_key[:16])
        return signer

    def save(self, path: Path) -> None:
        seed = self._private_key.private_bytes(Encoding.Raw, PrivateFormat.Raw, NoEncryption())
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        with path.open("w", encoding="utf-8") as handle:
            json.dump({"public_key": self.public_key, "secret_key": seed.hex()}, handle, indent=2)

    @property
    def public_key(self) -> str:
        return self._public_key.public_bytes(Encoding.Raw, PublicFormat.Raw).hex()

    def sign(self, record: CaseRecord) -> CaseRecord:
        """Return the record carrying its detached signature. Signing twice is refused."""
        if record.signed:
            raise ValueError(f"case {record.case_id} is already signed")
        signature = self._private_key.sign(record.canonical_bytes())
        return record.with_signature(signature.hex())

    def verify(self, record: CaseRecord, public_key: Optional[str] = None) -> bool:
        if not record.signed:
            return False
        try:
            verify_key = (
                Ed25519PublicKey.from_public_bytes(bytes.fromhex(public_key)) if public_key else self._public_key
            )
            verify_key.verify(bytes.fromhex(record.signature), record.canonical_bytes())
        except (InvalidSignature, ValueError):
            return False
        return True
