"""
Shared utilities for the MCP Hub.

This package aggregates common building blocks consumed by hub services:

- config: Service configuration via pydantic-settings
- logging: Structured logging with request and trace correlation
- metrics: Prometheus metrics helpers
- errors: Canonical error types and the error envelope
- http: Success/error envelopes and caller address extraction
- base_service: FastAPI application scaffold with middleware and handlers

Any cross-service logic should live here to avoid import cycles across
service packages. Do not import from service_* packages into shared/.
"""
