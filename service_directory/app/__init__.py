"""
Directory Service package for the Directory Access Layer.

The service fronts the local-business directory API, enforcing:
- Admission control: per-client token buckets with quota headers
- Token lifecycle: sign-in, refresh-secret rotation, revocation

Structure:
- app.main: FastAPI app, routes, and middleware wiring.
- app.ratelimit: Token-bucket limiter and admission middleware.
- app.auth: Account stores, token issuance, principal middleware.

Module import must not perform network calls; stores and Redis clients
connect lazily or in the startup hook.
"""
