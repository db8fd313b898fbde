"""
Caching proxy service package.

The proxy fronts the Service Map API, providing:
- Two-tier caching: a short-lived fresh tier and a long-lived stale tier
- Stale fallback when the upstream times out, refuses connections or
  answers with a server error
- Rate limiting that only counts requests which have to go upstream

Structure:
- app.main: FastAPI app, routes, and wiring.
- app.adapters: HTTP client for the upstream API.
- app.caching: Stores, fallback policy and the cache orchestrator.
- app.ratelimit: Miss-gated rate limiter.
"""
