"""
Test helper functions and factory methods for the Identity Core.
"""

import asyncio
import uuid
from datetime import datetime, timedelta, timezone
from typing import Dict, Any, Optional, List

from service_identity.app.keys.generator import generate_key_pair, public_jwk
from service_identity.app.models import (
    KeyPair,
    KeyStatus,
    OAuthClient,
    RefreshTokenRecord,
    RevocationOutcome,
    User,
)
from shared.errors import DomainError, ErrorKind


class TestDataFactory:
    """Factory for creating test data."""

    __test__ = False

    @staticmethod
    def user(**overrides) -> User:
        data = {
            "id": str(uuid.uuid4()),
            "email": "jane.doe@example.com",
            "roles": ["USER"],
            "active": True,
            "first_name": "Jane",
            "last_name": "Doe",
            "email_verified": False,
            "updated_at": datetime(2024, 1, 1, tzinfo=timezone.utc),
        }
        data.update(overrides)
        return User(**data)

    @staticmethod
    def client(**overrides) -> OAuthClient:
        data = {
            "id": str(uuid.uuid4()),
            "client_id": "web-app",
            "client_secret": "s3cret",
            "name": "Web app",
            "redirect_uris": ["http://localhost:3000/callback"],
            "allowed_scopes": ["openid", "profile", "email"],
            "active": True,
        }
        data.update(overrides)
        return OAuthClient(**data)

    @staticmethod
    def store_user_payload(**overrides) -> Dict[str, Any]:
        """User as the record store serializes it (camelCase)."""
        data = {
            "id": "user-123",
            "email": "jane.doe@example.com",
            "roles": ["USER"],
            "active": True,
            "firstName": "Jane",
            "lastName": "Doe",
            "emailVerified": False,
            "updatedAt": "2024-01-01T00:00:00Z",
        }
        data.update(overrides)
        return data


class InMemoryRecordStore:
    """Record store double implementing the full client interface."""

    def __init__(self):
        self.users: Dict[str, User] = {}
        self.passwords: Dict[str, str] = {}
        self.clients: Dict[str, OAuthClient] = {}
        self.keys: Dict[str, KeyPair] = {}
        self.refresh_tokens: Dict[str, RefreshTokenRecord] = {}
        self.healthy = True
        self._lock = asyncio.Lock()

    # Users

    async def create_user(self, data: Dict[str, Any]) -> User:
        async with self._lock:
            if any(user.email == data["email"] for user in self.users.values()):
                raise DomainError(ErrorKind.EMAIL_ALREADY_IN_USE, "Email already in use")
            fields = {key: value for key, value in data.items() if key != "password" and value is not None}
            now = datetime.now(timezone.utc)
            user = User(id=str(uuid.uuid4()), created_at=now, updated_at=now, **fields)
            self.users[user.id] = user
            self.passwords[user.id] = data["password"]
            return user

    async def get_user_by_email(self, email: str) -> Optional[User]:
        return next((user for user in self.users.values() if user.email == email), None)

    async def get_user_by_id(self, user_id: str) -> Optional[User]:
        return self.users.get(user_id)

    async def update_user(self, user_id: str, changes: Dict[str, Any]) -> User:
        user = self.users.get(user_id)
        if user is None:
            raise DomainError(ErrorKind.USER_NOT_FOUND, "User not found")
        updated = user.model_copy(update={**changes, "updated_at": datetime.now(timezone.utc)})
        self.users[user_id] = updated
        return updated

    async def verify_password(self, user_id: str, password: str) -> bool:
        return self.passwords.get(user_id) == password

    # OAuth clients

    async def create_client(self, data: Dict[str, Any]) -> OAuthClient:
        client = OAuthClient(id=str(uuid.uuid4()), **data)
        self.clients[client.client_id] = client
        return client

    async def get_client_by_client_id(self, client_id: str) -> Optional[OAuthClient]:
        return self.clients.get(client_id)

    # Signing keys

    async def create_key_pair(self, key_pair: KeyPair) -> KeyPair:
        async with self._lock:
            for kid, existing in self.keys.items():
                if existing.status == KeyStatus.ACTIVE:
                    self.keys[kid] = existing.model_copy(update={"status": KeyStatus.RETIRED})
            self.keys[key_pair.kid] = key_pair
            return key_pair

    async def get_key_pair_by_kid(self, kid: str) -> Optional[KeyPair]:
        return self.keys.get(kid)

    async def get_active_key_pair(self) -> Optional[KeyPair]:
        return next((key for key in self.keys.values() if key.status == KeyStatus.ACTIVE), None)

    async def get_active_key_pairs_as_jwks(self) -> List[Dict[str, Any]]:
        return [public_jwk(key) for key in self.keys.values()]

    # Refresh tokens

    async def create_refresh_token(self, token: str, user_id: str, client_id: Optional[str],
                                   expires_at: datetime) -> RefreshTokenRecord:
        record = RefreshTokenRecord(
            token=token,
            user_id=user_id,
            client_id=client_id,
            issued_at=datetime.now(timezone.utc),
            expires_at=expires_at,
        )
        self.refresh_tokens[token] = record
        return record

    async def get_refresh_token_by_value(self, token: str) -> Optional[RefreshTokenRecord]:
        return self.refresh_tokens.get(token)

    async def revoke_refresh_token_by_value(self, token: str) -> RevocationOutcome:
        async with self._lock:
            record = self.refresh_tokens.get(token)
            if record is None:
                return RevocationOutcome(found=False)
            if record.revoked_at is not None:
                return RevocationOutcome(found=True, was_active=False)
            self.refresh_tokens[token] = record.model_copy(update={"revoked_at": datetime.now(timezone.utc)})
            return RevocationOutcome(found=True, was_active=True)

    async def revoke_all_user_refresh_tokens(self, user_id: str) -> int:
        count = 0
        for token, record in list(self.refresh_tokens.items()):
            if record.user_id == user_id and record.revoked_at is None:
                self.refresh_tokens[token] = record.model_copy(update={"revoked_at": datetime.now(timezone.utc)})
                count += 1
        return count

    async def health_check(self) -> bool:
        return self.healthy

    async def close(self):
        pass

    # Helpers for tests

    def add_user(self, user: User, password: str = "password123") -> User:
        self.users[user.id] = user
        self.passwords[user.id] = password
        return user

    def add_key(self, key_pair: Optional[KeyPair] = None) -> KeyPair:
        key_pair = key_pair or generate_key_pair()
        for kid, existing in self.keys.items():
            if existing.status == KeyStatus.ACTIVE:
                self.keys[kid] = existing.model_copy(update={"status": KeyStatus.RETIRED})
        self.keys[key_pair.kid] = key_pair
        return key_pair

    def expire_refresh_token(self, token: str):
        record = self.refresh_tokens[token]
        self.refresh_tokens[token] = record.model_copy(
            update={"expires_at": datetime.now(timezone.utc) - timedelta(seconds=1)}
        )
