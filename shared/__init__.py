"""
Shared utilities for the Identity Core.

This package aggregates common building blocks consumed by the services:

- config: Service configuration via pydantic-settings
- logging: Structured logging with request correlation
- metrics: Prometheus metrics helpers
- errors: Typed error channel and error responses
- retry: Retry helpers for idempotent upstream calls
- circuit_breaker: Resilient external call protection
- base_service: FastAPI application scaffold

Only test_helpers imports from the service packages; nothing else in
shared/ may.
"""
