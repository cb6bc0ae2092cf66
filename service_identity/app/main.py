"""
Identity service: HTTP surface over the identity core.
"""

from typing import Optional

from fastapi import Request
from fastapi.responses import JSONResponse

from shared.base_service import BaseService
from shared.config import ServiceConfig, get_config
from shared.errors import DomainError, ErrorKind
from shared.logging import set_user_context
from .adapters.cache import RedisCache
from .adapters.notifications import NotificationClient
from .adapters.record_store import RecordStoreClient
from .federation.hosted import HostedIdentityAdapter
from .federation.oauth import GenericOAuthAdapter
from .federation.providers import build_provider_registry
from .federation.state import OAuthStateStore
from .federation.sync import FederatedSessionIssuer, IdentitySynchronizer
from .keys.directory import KeyDirectory
from .models import (
    HostedTokenRequest,
    LoginRequest,
    RefreshRequest,
    RegisterRequest,
    TokenRequest,
    UserProfile,
)
from .privacy import DataProcessingLog
from .sessions.orchestrator import SessionOrchestrator
from .tokens.refresh import RefreshTokenLifecycle
from .tokens.service import TokenService

SERVICE_NAME = "auth"
SERVICE_PORT = 8010


def bearer_token(request: Request) -> str:
    authorization = request.headers.get("Authorization", "")
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise DomainError(ErrorKind.TOKEN_REQUIRED, "Bearer token required")
    return token.strip()


class IdentityService(BaseService):
    """Identity service implementation."""

    def __init__(self,
                 config: Optional[ServiceConfig] = None,
                 store=None,
                 notifications: Optional[NotificationClient] = None,
                 cache: Optional[RedisCache] = None,
                 provider_transport=None):
        super().__init__(SERVICE_NAME, SERVICE_PORT, config or get_config(SERVICE_NAME, SERVICE_PORT))
        config = self.config
        metrics = self.metrics if config.enable_metrics else None

        self.store = store or RecordStoreClient.from_config(config)
        self.cache = cache
        if self.cache is None and config.redis_url:
            self.cache = RedisCache(config.redis_url)

        self.keys = KeyDirectory(
            self.store,
            algorithm=config.signing_algorithm,
            active_key_ttl=config.active_key_cache_ttl,
            auto_create=config.auto_create_signing_key,
            cache=self.cache,
            jwks_cache_ttl=config.jwks_cache_ttl,
        )
        self.tokens = TokenService.from_config(config, self.keys)
        self.refresh_tokens = RefreshTokenLifecycle(
            self.store,
            ttl_seconds=config.refresh_token_ttl,
            reuse_revokes_family=config.refresh_reuse_revokes_family,
            metrics=metrics,
        )
        self.notifications = notifications or NotificationClient(
            config.notification_url, timeout=config.notification_timeout
        )
        self.privacy = DataProcessingLog()
        self.sessions = SessionOrchestrator(
            self.store,
            self.tokens,
            self.refresh_tokens,
            self.notifications,
            frontend_url=config.frontend_url,
            privacy=self.privacy,
            metrics=metrics,
        )

        states = OAuthStateStore(config.oauth_state_ttl, config.oauth_state_max_pending)
        federated_sessions = FederatedSessionIssuer(
            IdentitySynchronizer(self.store),
            self.tokens,
            self.refresh_tokens,
            privacy=self.privacy,
            metrics=metrics,
        )
        self.oauth = GenericOAuthAdapter(
            build_provider_registry(config),
            states,
            federated_sessions,
            redirect_base=config.redirect_base,
            timeout=config.provider_timeout,
            transport=provider_transport,
        )
        self.hosted = HostedIdentityAdapter.from_config(
            config, states, federated_sessions, transport=provider_transport
        )

        self._setup_lifecycle()
        self._setup_identity_routes()

    def _setup_lifecycle(self):
        @self.app.on_event("startup")
        async def _startup():
            if self.cache is not None:
                await self.cache.start()
            self.logger.info("Identity service started", issuer=self.config.public_url)

        @self.app.on_event("shutdown")
        async def _shutdown():
            await self.sessions.wait_for_notifications()
            if self.cache is not None:
                await self.cache.stop()
            if hasattr(self.store, "close"):
                await self.store.close()

    def _setup_identity_routes(self):
        """Set up identity routes."""

        @self.app.get("/")
        async def root():
            """Root endpoint."""
            return {
                "service": SERVICE_NAME,
                "message": "Identity Core - Auth Service",
                "version": "1.0.0"
            }

        @self.app.post("/auth/register", status_code=201)
        async def register(body: RegisterRequest):
            profile = UserProfile(first_name=body.first_name, last_name=body.last_name, picture=body.picture)
            user = await self.sessions.register(body.email, body.password, profile)
            return {
                "message": "Account created, check your email to confirm it",
                "user": user.model_dump(mode="json"),
            }

        @self.app.post("/auth/login")
        async def login(body: LoginRequest):
            tokens = await self.sessions.login(body.email, body.password)
            set_user_context(tokens.user.id if tokens.user else None)
            return tokens.model_dump(mode="json", exclude_none=True)

        @self.app.post("/auth/refresh")
        async def refresh(body: RefreshRequest):
            tokens = await self.sessions.refresh(body.refresh_token)
            return tokens.model_dump(mode="json", exclude_none=True)

        @self.app.post("/auth/revoke")
        async def revoke(body: RefreshRequest):
            result = await self.sessions.revoke_session(body.refresh_token)
            return result.model_dump()

        @self.app.post("/auth/verify-email")
        async def verify_email(body: TokenRequest):
            result = await self.sessions.verify_email(body.token)
            return result.model_dump(mode="json")

        @self.app.post("/auth/verify")
        async def verify_token(body: TokenRequest):
            """Token verification endpoint."""
            try:
                claims = await self.tokens.verify_access_token(body.token)
            except DomainError as e:
                return {"valid": False, "error": e.code}
            return {"valid": True, "claims": claims}

        @self.app.get("/auth/userinfo")
        async def user_info(request: Request):
            claims = await self.tokens.verify_access_token(bearer_token(request))
            set_user_context(claims["sub"])
            return await self.sessions.user_info(claims["sub"])

        @self.app.get("/.well-known/jwks.json")
        async def jwks():
            return JSONResponse(
                content=await self.keys.get_jwks(),
                headers={"Cache-Control": f"public, max-age={self.config.jwks_cache_ttl}"}
            )

        @self.app.get("/oauth/providers")
        async def providers():
            status = self.oauth.providers_status()
            status["hosted"] = {"configured": self.hosted.configured}
            return status

        @self.app.get("/oauth/{provider}/authorize")
        async def oauth_authorize(provider: str):
            authorization = await self.oauth.start(provider)
            return {"authorization_url": authorization.url, "state": authorization.state}

        @self.app.get("/oauth/{provider}/callback")
        async def oauth_callback(provider: str,
                                 code: Optional[str] = None,
                                 state: Optional[str] = None,
                                 error: Optional[str] = None):
            result = await self.oauth.complete(provider, code, state, error)
            return result.model_dump(mode="json", exclude_none=True)

        @self.app.get("/hosted/authorize")
        async def hosted_authorize():
            authorization = await self.hosted.start()
            return {"authorization_url": authorization.url, "state": authorization.state}

        @self.app.get("/hosted/callback")
        async def hosted_callback(code: Optional[str] = None,
                                  state: Optional[str] = None,
                                  error: Optional[str] = None):
            result = await self.hosted.complete(code, state, error)
            return result.model_dump(mode="json", exclude_none=True)

        @self.app.post("/hosted/token")
        async def hosted_token(body: HostedTokenRequest):
            result = await self.hosted.login_with_token(body.access_token)
            return result.model_dump(mode="json", exclude_none=True)

    async def _check_dependencies(self):
        """Check identity dependencies."""
        return {"record_store": "ok" if await self.store.health_check() else "error"}


def create_app(config: Optional[ServiceConfig] = None, **kwargs):
    """Create FastAPI application."""
    service = IdentityService(config, **kwargs)
    return service.app


if __name__ == "__main__":
    service = IdentityService()
    service.run()
