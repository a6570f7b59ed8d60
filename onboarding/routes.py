"""
Onboarding Routes

POST /v2/onboard/signup  - Create tenant + owner + ACH payment account (public, rate-limited)
"""

import os
import time
import threading
from collections import defaultdict
from flask import Blueprint, request, jsonify

from onboarding.exceptions import (
    ValidationError,
    DuplicateRegistration,
    OnboardingError,
)
from onboarding.models import SignupRequest


# ============================================================================
# Simple in-memory rate limiter for the signup endpoint
# ============================================================================

SIGNUP_RATE_LIMIT = int(os.environ.get('SIGNUP_RATE_LIMIT', 5))        # max requests
SIGNUP_RATE_WINDOW = int(os.environ.get('SIGNUP_RATE_WINDOW', 3600))   # per window (seconds)


class RateLimiter:

    def __init__(self, limit: int = SIGNUP_RATE_LIMIT, window: int = SIGNUP_RATE_WINDOW,
                 clock=time.time):
        self.limit = limit
        self.window = window
        self.clock = clock
        self._hits = defaultdict(list)   # ip -> [timestamp, ...]
        self._lock = threading.Lock()
        self._last_sweep = clock()

    def is_limited(self, ip: str) -> bool:
        """Check and record one request for ip."""
        now = self.clock()
        window_start = now - self.window
        with self._lock:
            if now - self._last_sweep >= self.window:
                self._sweep(window_start)
                self._last_sweep = now
            # Purge old entries
            self._hits[ip] = [t for t in self._hits[ip] if t > window_start]
            if len(self._hits[ip]) >= self.limit:
                return True
            self._hits[ip].append(now)
            return False

    def _sweep(self, window_start: float) -> None:
        """Drop every ip with no request inside the window."""
        for ip in list(self._hits):
            recent = [t for t in self._hits[ip] if t > window_start]
            if recent:
                self._hits[ip] = recent
            else:
                del self._hits[ip]

    def tracked(self) -> int:
        with self._lock:
            return len(self._hits)


def init_onboarding(orchestrator, rate_limiter=None):
    """Initialize onboarding blueprint with the signup orchestrator."""
    onboarding_bp = Blueprint('onboarding', __name__, url_prefix='/v2/onboard')
    limiter = rate_limiter or RateLimiter()

    @onboarding_bp.route('/signup', methods=['POST'])
    def signup():
        """
        Register a business: payment account, tenant and owner account.

        Request body (camelCase, as posted by the registration form):
            {"firstName", "lastName", "email", "password", "companyName",
             "industry", "businessType", "routingNumber", "accountNumber",
             "bankAccountType", "bankAccountName", "selectedPlan",
             "agreeToTerms": true, "authorizePayments": true}

        Returns 201:
            {
              "success": true,
              "tenantId": "uuid",
              "ownerId": "uuid",
              "trialEndDate": "2025-02-14",
              "paymentMethodStatus": "pending",
              "sessionToken": "..."
            }
        """
        # Rate limit by IP
        client_ip = request.remote_addr or 'unknown'
        if limiter.is_limited(client_ip):
            return jsonify({
                'success': False,
                'error': 'Rate limit exceeded. Try again later.'
            }), 429

        signup_request = SignupRequest.from_json(request.get_json(silent=True))

        try:
            result = orchestrator.onboard(signup_request)
        except ValidationError as e:
            return jsonify({
                'success': False,
                'error': 'Validation failed',
                'details': e.errors
            }), 400
        except DuplicateRegistration:
            return jsonify({
                'success': False,
                'error': 'An account with this email already exists'
            }), 409
        except OnboardingError as e:
            print(f"[ONBOARD] Signup failed for {signup_request.email}: {e}", flush=True)
            return jsonify({'success': False, 'error': 'Setup failed, please try again'}), 500
        except Exception as e:
            print(f"[ONBOARD] Unexpected signup error for {signup_request.email}: {e}", flush=True)
            return jsonify({'success': False, 'error': 'Setup failed, please try again'}), 500

        return jsonify(result.to_json()), 201

    return onboarding_bp
