"""
Signing key generation and public JWK export.
"""

import uuid
from datetime import datetime, timedelta, timezone
from typing import Dict, Any

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from jose import jwk

from ..models import KeyPair, KeyStatus

KEY_SIZE = 2048
KEY_LIFETIME = timedelta(days=30)

# Members of a JWK that may be published. Anything else (d, p, q, dp, dq, qi, oth, k) is private.
PUBLIC_JWK_MEMBERS = ("kty", "kid", "use", "alg", "n", "e", "crv", "x", "y", "x5c", "x5t")


def generate_key_pair(algorithm: str = "RS256") -> KeyPair:
    """Generate a fresh RSA key pair, PKCS8/SPKI PEM encoded."""
    if not algorithm.startswith("RS"):
        raise ValueError(f"Unsupported signing algorithm: {algorithm}")

    private_key = rsa.generate_private_key(public_exponent=65537, key_size=KEY_SIZE)
    private_pem = private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption()
    ).decode("ascii")
    public_pem = private_key.public_key().public_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PublicFormat.SubjectPublicKeyInfo
    ).decode("ascii")

    now = datetime.now(timezone.utc)
    return KeyPair(
        kid=str(uuid.uuid4()),
        algorithm=algorithm,
        private_key=private_pem,
        public_key=public_pem,
        status=KeyStatus.ACTIVE,
        issued_at=now,
        expires_at=now + KEY_LIFETIME,
    )


def sanitize_jwk(key: Dict[str, Any]) -> Dict[str, Any]:
    """Strip every non-public member from a JWK."""
    return {name: key[name] for name in PUBLIC_JWK_MEMBERS if name in key}


def public_jwk(key_pair: KeyPair) -> Dict[str, Any]:
    """Public JWK for a stored key pair."""
    data = jwk.construct(key_pair.public_key, algorithm=key_pair.algorithm).to_dict()
    data.update({"kid": key_pair.kid, "use": "sig", "alg": key_pair.algorithm})
    return sanitize_jwk(data)
