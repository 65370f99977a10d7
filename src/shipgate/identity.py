# identity.py
"""
Signed identity assertions.

An assertion is a compact token, three base64url segments joined by dots:

    header.claims.signature

The header is {"alg": "EdDSA", "typ": "JWT"}; the signature is Ed25519 over
"header.claims". Claims must carry `iss`, `aud`, `sub` and `exp` (unix
seconds); anything else (`ref`, `repository`, `workflow`, ...) is passed
through as subject claims.
"""
from __future__ import annotations

import base64
import binascii
import json
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey, Ed25519PublicKey
from cryptography.hazmat.primitives.serialization import (
    Encoding,
    PublicFormat,
    load_pem_public_key,
)

from .errors import UntrustedIssuerError

ALGORITHM = "EdDSA"
REQUIRED_CLAIMS = ("iss", "aud", "sub", "exp")


def _b64url_encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def _b64url_decode(segment: str) -> bytes:
    padded = segment + "=" * (-len(segment) % 4)
    return base64.urlsafe_b64decode(padded.encode("ascii"))


@dataclass(frozen=True)
class Assertion:
    """A decoded (not yet verified) identity assertion."""
    header: Dict[str, Any]
    claims: Dict[str, Any]
    signing_input: bytes = field(repr=False)
    signature: bytes = field(repr=False)
    raw: str = field(repr=False)

    @property
    def issuer(self) -> str:
        return self.claims["iss"]

    @property
    def subject(self) -> str:
        return self.claims["sub"]

    @property
    def audiences(self) -> tuple[str, ...]:
        aud = self.claims["aud"]
        return (aud,) if isinstance(aud, str) else tuple(aud)

    @property
    def expires_at(self) -> float:
        return float(self.claims["exp"])


def encode_assertion(claims: Dict[str, Any], private_key: Ed25519PrivateKey) -> str:
    header = {"alg": ALGORITHM, "typ": "JWT"}
    h = _b64url_encode(json.dumps(header, separators=(",", ":")).encode("utf-8"))
    c = _b64url_encode(json.dumps(claims, separators=(",", ":"), sort_keys=True).encode("utf-8"))
    signing_input = f"{h}.{c}".encode("ascii")
    sig = private_key.sign(signing_input)
    return f"{h}.{c}.{_b64url_encode(sig)}"


def decode_assertion(token: str) -> Assertion:
    """Parse a token without verifying it. Malformed input raises UntrustedIssuerError."""
    parts = token.strip().split(".")
    if len(parts) != 3:
        raise UntrustedIssuerError("Malformed identity assertion: expected 3 segments")
    try:
        header = json.loads(_b64url_decode(parts[0]))
        claims = json.loads(_b64url_decode(parts[1]))
        signature = _b64url_decode(parts[2])
    except (binascii.Error, ValueError, UnicodeDecodeError) as e:
        raise UntrustedIssuerError(f"Malformed identity assertion: {e}") from e

    if not isinstance(header, dict) or not isinstance(claims, dict):
        raise UntrustedIssuerError("Malformed identity assertion: header and claims must be objects")
    if header.get("alg") != ALGORITHM:
        raise UntrustedIssuerError(f"Unsupported assertion algorithm: {header.get('alg')!r}")
    missing = [c for c in REQUIRED_CLAIMS if c not in claims]
    if missing:
        raise UntrustedIssuerError(f"Identity assertion missing claims: {missing}")

    return Assertion(
        header=header,
        claims=claims,
        signing_input=f"{parts[0]}.{parts[1]}".encode("ascii"),
        signature=signature,
        raw=token.strip(),
    )


@dataclass(frozen=True)
class TrustedIssuer:
    url: str
    public_key: Ed25519PublicKey = field(repr=False)
    audience: str

    @classmethod
    def from_pem(cls, url: str, pem_path: str | Path, audience: str) -> "TrustedIssuer":
        key = load_pem_public_key(Path(pem_path).read_bytes())
        if not isinstance(key, Ed25519PublicKey):
            raise ValueError(f"Issuer key for {url} is not an Ed25519 public key")
        return cls(url=url, public_key=key, audience=audience)

    def verify(self, assertion: Assertion) -> None:
        try:
            self.public_key.verify(assertion.signature, assertion.signing_input)
        except InvalidSignature as e:
            raise UntrustedIssuerError(f"Assertion signature does not match issuer {self.url}") from e
        if self.audience not in assertion.audiences:
            raise UntrustedIssuerError(
                f"Assertion audience {list(assertion.audiences)} does not include {self.audience!r}"
            )


class LocalIssuer:
    """
    Development issuer: generates a key pair and mints assertions.

    Lets `shipgate run --dev-identity` and tests exercise the broker without
    an external identity provider.
    """

    def __init__(self, url: str = "https://shipgate.local", audience: str = "shipgate"):
        self.url = url
        self.audience = audience
        self._key = Ed25519PrivateKey.generate()

    @property
    def trusted(self) -> TrustedIssuer:
        return TrustedIssuer(url=self.url, public_key=self._key.public_key(), audience=self.audience)

    def public_key_pem(self) -> bytes:
        """PEM the issuer key can be trusted by elsewhere (see TrustedIssuer.from_pem)."""
        return self._key.public_key().public_bytes(encoding=Encoding.PEM, format=PublicFormat.SubjectPublicKeyInfo)

    def mint(
        self,
        subject: str,
        *,
        ttl: int = 300,
        audience: Optional[str] = None,
        now: Optional[float] = None,
        **claims: Any,
    ) -> str:
        now = time.time() if now is None else now
        body = {
            "iss": self.url,
            "aud": audience or self.audience,
            "sub": subject,
            "iat": int(now),
            "exp": int(now + ttl),
        }
        body.update(claims)
        return encode_assertion(body, self._key)
