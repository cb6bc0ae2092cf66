"""
Token service: issues and verifies this service's signed tokens.
"""

import time
from typing import Dict, Any, Optional

import jwt

from shared.logging import get_logger
from shared.errors import DomainError, ErrorKind
from ..keys.directory import KeyDirectory
from ..models import User

ACCESS_SCOPE = "openid profile email"
EMAIL_VERIFICATION_PURPOSE = "email_verification"


class TokenService:
    """Issues access, identity and email-verification tokens."""

    def __init__(self,
                 keys: KeyDirectory,
                 issuer: str,
                 audience: str,
                 algorithm: str = "RS256",
                 access_token_ttl: int = 900,
                 id_token_ttl: int = 3600,
                 email_verification_ttl: int = 86400):
        self.keys = keys
        self.issuer = issuer
        self.audience = audience
        self.algorithm = algorithm
        self.access_token_ttl = access_token_ttl
        self.id_token_ttl = id_token_ttl
        self.email_verification_ttl = email_verification_ttl
        self.logger = get_logger("identity.tokens")

    @classmethod
    def from_config(cls, config, keys: KeyDirectory) -> "TokenService":
        return cls(
            keys,
            issuer=config.public_url,
            audience=config.frontend_url,
            algorithm=config.signing_algorithm,
            access_token_ttl=config.access_token_ttl,
            id_token_ttl=config.id_token_ttl,
            email_verification_ttl=config.email_verification_ttl,
        )

    async def _sign(self, claims: Dict[str, Any], audience: str, ttl: int) -> str:
        key_pair = await self.keys.get_active_key()
        now = int(time.time())
        payload = {
            **claims,
            "iss": self.issuer,
            "aud": audience,
            "iat": now,
            "exp": now + ttl,
        }
        return jwt.encode(
            payload,
            key_pair.private_key,
            algorithm=self.algorithm,
            headers={"kid": key_pair.kid, "typ": "JWT"}
        )

    async def issue_access_token(self, user: User) -> str:
        return await self._sign(
            {
                "sub": user.id,
                "email": user.email,
                "roles": list(user.roles),
                "scope": ACCESS_SCOPE,
            },
            self.audience,
            self.access_token_ttl
        )

    async def issue_id_token(self, user: User, audience_client_id: str, nonce: Optional[str] = None) -> str:
        claims = {
            "sub": user.id,
            "email": user.email,
            "email_verified": user.email_verified,
            "name": user.display_name,
            "given_name": user.first_name,
            "family_name": user.last_name,
            "picture": user.picture,
        }
        if nonce:
            claims["nonce"] = nonce
        return await self._sign(claims, audience_client_id, self.id_token_ttl)

    async def issue_email_verification_token(self, user: User) -> str:
        return await self._sign(
            {"sub": user.id, "purpose": EMAIL_VERIFICATION_PURPOSE},
            self.audience,
            self.email_verification_ttl
        )

    async def verify_access_token(self, token: str) -> Dict[str, Any]:
        """Verify an access token and return its claims."""
        claims = await self._verify(token, self.audience)
        if "purpose" in claims:
            raise DomainError(ErrorKind.TOKEN_INVALID, "Token is not an access token")
        return claims

    async def verify_email_verification_token(self, token: str) -> Dict[str, Any]:
        """Verify an email-verification token; any other purpose is rejected."""
        claims = await self._verify(token, self.audience)
        if claims.get("purpose") != EMAIL_VERIFICATION_PURPOSE:
            raise DomainError(ErrorKind.INVALID_TOKEN_PURPOSE, "Token was not issued for email verification")
        return claims

    async def _verify(self, token: str, audience: str) -> Dict[str, Any]:
        if not token:
            raise DomainError(ErrorKind.TOKEN_REQUIRED, "Token required")

        try:
            header = jwt.get_unverified_header(token)
        except jwt.InvalidTokenError as e:
            raise DomainError(ErrorKind.TOKEN_INVALID, "Malformed token") from e

        if header.get("alg") != self.algorithm:
            raise DomainError(ErrorKind.TOKEN_INVALID, "Unexpected token algorithm")

        kid = header.get("kid")
        if not isinstance(kid, str) or not kid:
            raise DomainError(ErrorKind.TOKEN_INVALID, "Token header missing key id")

        key_pair = await self.keys.get_key(kid)
        if key_pair is None:
            raise DomainError(ErrorKind.TOKEN_INVALID, "Unknown signing key", details={"kid": kid})

        try:
            return jwt.decode(
                token,
                key_pair.public_key,
                algorithms=[self.algorithm],
                audience=audience,
                issuer=self.issuer,
                options={"require": ["exp", "iat", "sub"]}
            )
        except jwt.ExpiredSignatureError as e:
            raise DomainError(ErrorKind.TOKEN_EXPIRED, "Token expired") from e
        except jwt.InvalidTokenError as e:
            self.logger.info("Token verification failed", kid=kid, error=str(e))
            raise DomainError(ErrorKind.TOKEN_INVALID, "Invalid token") from e
