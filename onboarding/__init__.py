"""
Onboarding Module for TradeSphere
Domain: Business Signup with ACH Payment

Endpoints:
- POST /v2/onboard/signup  (public, rate-limited)

Pieces:
- validation: pure checks on the signup form
- idempotency: email / customer reservation keys shared with the webhook path
- orchestrator: the signup saga (payment account -> tenant -> notify)
"""
