"""
Identity service package for the Identity Core.

This package issues, verifies and rotates this service's signed
credentials and reconciles identities asserted by external providers into
one local user record:

- app.main: Application entrypoint that wires routes and lifecycle.
- app.keys: Signing key generation and the key directory.
- app.tokens: Signed tokens and the refresh token lifecycle.
- app.sessions: Password sessions and relying-client validation.
- app.federation: OAuth2 providers and the hosted identity platform.
- app.adapters: Record store, notification and cache clients.

Module import must not perform network calls; all IO happens in route
handlers or explicit startup hooks.
"""
