"""
Federated identity synchronization into the local user record.
"""

import secrets
import string
from typing import Dict, Any, Optional

from shared.logging import get_logger
from shared.errors import DomainError, ErrorKind
from shared.metrics import MetricsCollector
from ..adapters.record_store import RecordStoreClient
from ..models import FederatedIdentity, FederatedLoginResult, User
from ..privacy import DataProcessingLog
from ..tokens.refresh import RefreshTokenLifecycle
from ..tokens.service import TokenService

PASSWORD_LENGTH = 16
_PASSWORD_CLASSES = (string.ascii_lowercase, string.ascii_uppercase, string.digits, "!@#$%^&*()-_=+")


def generate_strong_password(length: int = PASSWORD_LENGTH) -> str:
    """Random password containing every character class."""
    alphabet = "".join(_PASSWORD_CLASSES)
    while True:
        password = "".join(secrets.choice(alphabet) for _ in range(length))
        if all(any(char in chars for char in password) for chars in _PASSWORD_CLASSES):
            return password


class IdentitySynchronizer:
    """Folds a federated identity into the local user owning its email."""

    def __init__(self, store: RecordStoreClient):
        self.store = store
        self.logger = get_logger("identity.federation.sync")

    async def synchronize(self, identity: FederatedIdentity) -> User:
        if not identity.email:
            raise DomainError(ErrorKind.EMAIL_REQUIRED, "Email required for authentication")

        user = await self.store.get_user_by_email(identity.email)
        if user is None:
            try:
                user = await self.store.create_user({
                    "email": identity.email,
                    "password": generate_strong_password(),
                    "first_name": identity.first_name,
                    "last_name": identity.last_name,
                    "picture": identity.picture,
                    "email_verified": identity.email_verified,
                    "roles": ["USER"],
                    "provider": identity.provider,
                    "provider_id": identity.provider_id,
                })
                self.logger.info("User created from federated identity",
                                 user_id=user.id, provider=identity.provider)
                return user
            except DomainError as e:
                if e.kind != ErrorKind.EMAIL_ALREADY_IN_USE:
                    raise
                # Lost a creation race for this email; update the winner.
                user = await self.store.get_user_by_email(identity.email)
                if user is None:
                    raise

        return await self.store.update_user(user.id, self._profile_changes(user, identity))

    @staticmethod
    def _profile_changes(user: User, identity: FederatedIdentity) -> Dict[str, Any]:
        changes: Dict[str, Any] = {
            "first_name": identity.first_name,
            "last_name": identity.last_name,
            "picture": identity.picture,
            "provider": identity.provider,
            "provider_id": identity.provider_id,
        }
        if identity.email_verified and not user.email_verified:
            changes["email_verified"] = True
        return {key: value for key, value in changes.items() if value is not None}


class FederatedSessionIssuer:
    """Issues this service's tokens once a federated identity is synchronized."""

    def __init__(self,
                 synchronizer: IdentitySynchronizer,
                 tokens: TokenService,
                 refresh_tokens: RefreshTokenLifecycle,
                 privacy: Optional[DataProcessingLog] = None,
                 metrics: Optional[MetricsCollector] = None):
        self.synchronizer = synchronizer
        self.tokens = tokens
        self.refresh_tokens = refresh_tokens
        self.privacy = privacy or DataProcessingLog()
        self.metrics = metrics
        self.logger = get_logger("identity.federation")

    async def login(self, identity: FederatedIdentity) -> FederatedLoginResult:
        try:
            user = await self.synchronizer.synchronize(identity)
            if not user.active:
                raise DomainError(ErrorKind.UNAUTHORIZED, "Account is deactivated")
        except DomainError:
            self._record(identity.provider, "failure")
            raise

        result = FederatedLoginResult(
            access_token=await self.tokens.issue_access_token(user),
            refresh_token=await self.refresh_tokens.issue(user.id),
            expires_in=self.tokens.access_token_ttl,
            user=user,
            provider=identity.provider,
        )
        self.privacy.record(user.id, f"{identity.provider}_login", "authentication",
                            "authentication", "legitimate_interest")
        self._record(identity.provider, "success")
        self.logger.info("Federated login", user_id=user.id, provider=identity.provider)
        return result

    def _record(self, provider: str, outcome: str):
        if self.metrics:
            self.metrics.record_federated_login(provider, outcome)
