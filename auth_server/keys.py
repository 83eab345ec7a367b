"""
RSA signing key ring: one current key that signs new tokens, plus retired keys that
are still published in the JWKS so tokens they signed verify until they expire.
kid is the RFC 7638 JWK thumbprint, so it is stable across restarts for the same key.
"""
import base64
import hashlib
import json
import logging
from pathlib import Path
from typing import Sequence

import jwt
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.rsa import RSAPrivateKey, RSAPublicKey, generate_private_key

logger = logging.getLogger(__name__)

_KEY_BITS = 2048


def _b64url_uint(value: int) -> str:
    return base64.urlsafe_b64encode(value.to_bytes((value.bit_length() + 7) // 8, "big")).rstrip(b"=").decode("ascii")


def generate_key() -> RSAPrivateKey:
    return generate_private_key(public_exponent=65537, key_size=_KEY_BITS)


def _serialize_private(key: RSAPrivateKey) -> bytes:
    return key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    )


def _load_private(path: Path) -> RSAPrivateKey:
    key = serialization.load_pem_private_key(path.read_bytes(), password=None)
    if not isinstance(key, RSAPrivateKey):
        raise ValueError(f"{path} does not hold an RSA private key")
    return key


def thumbprint(public_key: RSAPublicKey) -> str:
    """RFC 7638 thumbprint: SHA-256 over the required members in lexicographic order."""
    numbers = public_key.public_numbers()
    members = {"e": _b64url_uint(numbers.e), "kty": "RSA", "n": _b64url_uint(numbers.n)}
    digest = hashlib.sha256(json.dumps(members, sort_keys=True, separators=(",", ":")).encode("utf-8")).digest()
    return base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")


class SigningKey:
    def __init__(self, private_key: RSAPrivateKey):
        self.private_key = private_key
        self.kid = thumbprint(private_key.public_key())

    def public_jwk(self) -> dict:
        numbers = self.private_key.public_key().public_numbers()
        return {
            "kty": "RSA",
            "kid": self.kid,
            "alg": "RS256",
            "use": "sig",
            "n": _b64url_uint(numbers.n),
            "e": _b64url_uint(numbers.e),
        }


class SigningKeyRing:
    def __init__(self, current: SigningKey, retired: Sequence[SigningKey] = ()):
        self.current = current
        self.retired = tuple(k for k in retired if k.kid != current.kid)

    @classmethod
    def load(cls, current_path: str | None, retired_paths: Sequence[str] = ()) -> "SigningKeyRing":
        """
        Load the current key from current_path, generating and saving one if the file is
        missing. An empty path gives an ephemeral key that lives only in this process.
        Retired key files that are missing are skipped with a warning.
        """
        if not current_path:
            logger.warning("No signing key path configured; using an ephemeral key")
            current = SigningKey(generate_key())
        else:
            p = Path(current_path)
            if p.exists():
                current = SigningKey(_load_private(p))
            else:
                current = SigningKey(generate_key())
                try:
                    p.write_bytes(_serialize_private(current.private_key))
                    logger.info("Generated and saved signing key to %s", current_path)
                except OSError as e:
                    logger.warning("Could not save signing key to %s: %s", current_path, e)

        retired = []
        for path in retired_paths:
            p = Path(path)
            if not p.exists():
                logger.warning("Retired signing key %s not found; skipping", path)
                continue
            key = SigningKey(_load_private(p))
            retired.append(key)
            logger.info("Loaded retired signing key kid=%s", key.kid)
        logger.info("Signing with kid=%s (%d retired key(s) published)", current.kid, len(retired))
        return cls(current, retired)

    def rotate(self, new_key: RSAPrivateKey | None = None) -> SigningKey:
        """Make a new key current; the previous current key becomes retired."""
        previous = self.current
        self.current = SigningKey(new_key or generate_key())
        self.retired = (previous,) + self.retired
        logger.info("Rotated signing key: kid=%s replaces kid=%s", self.current.kid, previous.kid)
        return self.current

    def sign(self, payload: dict) -> str:
        return jwt.encode(
            payload,
            self.current.private_key,
            algorithm="RS256",
            headers={"kid": self.current.kid, "typ": "JWT"},
        )

    def jwks(self) -> dict:
        return {"keys": [k.public_jwk() for k in (self.current, *self.retired)]}


_ring: SigningKeyRing | None = None


def get_key_ring() -> SigningKeyRing:
    """Process-wide key ring, loaded from config on first use."""
    global _ring
    if _ring is None:
        from auth_server.config import RETIRED_KEY_PATHS, SIGNING_KEY_PATH

        _ring = SigningKeyRing.load(SIGNING_KEY_PATH, RETIRED_KEY_PATHS)
    return _ring
