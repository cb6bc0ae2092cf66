"""
Data models for the Identity service.

Records exchanged with the record store use camelCase on the wire; the
models accept both spellings and dump by alias when sent back.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, Any, Optional, List

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class StoreModel(BaseModel):
    """Base for records owned by the record store."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    def to_store(self, **kwargs) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json", **kwargs)


class User(StoreModel):
    """Local user record. Credential material is never parsed into it."""

    id: str
    email: str
    roles: List[str] = Field(default_factory=lambda: ["USER"])
    active: bool = True
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    picture: Optional[str] = None
    email_verified: bool = False
    provider: Optional[str] = None
    provider_id: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def display_name(self) -> str:
        return f"{self.first_name or ''} {self.last_name or ''}".strip()


class UserProfile(BaseModel):
    """Optional profile fields supplied at registration."""

    first_name: Optional[str] = None
    last_name: Optional[str] = None
    picture: Optional[str] = None


class KeyStatus(str, Enum):
    """Signing key lifecycle."""
    ACTIVE = "ACTIVE"
    RETIRED = "RETIRED"


class KeyPair(StoreModel):
    """Asymmetric signing key pair; PEM encoded."""

    kid: str
    algorithm: str = "RS256"
    private_key: Optional[str] = None
    public_key: str
    status: KeyStatus = KeyStatus.ACTIVE
    issued_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None


class RefreshTokenRecord(StoreModel):
    """Persisted refresh token."""

    token: str
    user_id: str
    client_id: Optional[str] = None
    issued_at: Optional[datetime] = None
    expires_at: datetime
    revoked_at: Optional[datetime] = None

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        now = now or datetime.now(timezone.utc)
        expires_at = self.expires_at
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        return expires_at <= now


class OAuthClient(StoreModel):
    """Registered OAuth client."""

    id: str
    client_id: str
    client_secret: Optional[str] = None
    name: Optional[str] = None
    redirect_uris: List[str] = Field(default_factory=list)
    allowed_scopes: List[str] = Field(default_factory=list)
    active: bool = True
    owner_id: Optional[str] = None


@dataclass
class RevocationOutcome:
    """Result of the store's conditional revoke."""
    found: bool
    was_active: bool = False


@dataclass(frozen=True)
class FederatedIdentity:
    """Identity asserted by an external provider, normalized."""
    provider: str
    provider_id: Optional[str]
    email: Optional[str]
    email_verified: bool = False
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    picture: Optional[str] = None


@dataclass(frozen=True)
class RefreshGrant:
    """Owner of a verified refresh token."""
    user_id: str
    client_id: Optional[str] = None


@dataclass(frozen=True)
class RotatedRefreshToken:
    """Replacement issued by a successful rotation."""
    user_id: str
    client_id: Optional[str]
    token: str


@dataclass
class AuthorizationRequest:
    """Provider authorization URL and the state bound to it."""
    url: str
    state: str


class SessionTokens(BaseModel):
    """Tokens handed to a caller after a successful authentication."""

    access_token: str
    refresh_token: str
    token_type: str = "Bearer"
    expires_in: int
    id_token: Optional[str] = None
    user: Optional[User] = None


class FederatedLoginResult(SessionTokens):
    """Local tokens issued after a federated login."""

    provider: str


class RevocationResult(BaseModel):
    """Structured outcome of a logout."""

    success: bool
    message: str


class EmailVerificationResult(BaseModel):
    """Outcome of an email verification."""

    user: User
    already_verified: bool = False
    message: str


@dataclass
class DataProcessingEntry:
    """One data-processing activity, logged for privacy accounting."""
    user_id: str
    activity: str
    data_type: str
    processing_type: str
    legal_basis: str
    recorded_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


# Request bodies

class RegisterRequest(BaseModel):
    email: str = Field(min_length=3, max_length=320)
    password: str = Field(min_length=8)
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    picture: Optional[str] = None


class LoginRequest(BaseModel):
    email: str
    password: str


class RefreshRequest(BaseModel):
    refresh_token: str


class TokenRequest(BaseModel):
    token: str


class HostedTokenRequest(BaseModel):
    access_token: str
