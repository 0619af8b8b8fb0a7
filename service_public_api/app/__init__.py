"""
Public API Service package for the Feed Reader Access Layer.

The service fronts the reader's public procedures, enforcing:
- Global admission control: one token bucket per client IP, charged by every
  proxied request (reads cost less than writes)
- Per-procedure budgets: a stricter bucket on rate-limited public routes

Structure:
- app.main: FastAPI app, routes, and middleware wiring.
- app.ratelimit: Token buckets (in-process and Redis), client identity
  resolution and the request-side middleware.
"""
