"""
TradeSphere Stripe Webhook Endpoint
Domain: Billing

POST /v2/billing/webhook  - Stripe event delivery (signature-checked)
GET  /v2/billing/health   - Billing configuration status

Once a delivery is authentic it is always acknowledged with 200, even if
applying it failed; the failure is recorded on the stored event instead of
making Stripe retry blindly.
"""

from flask import Blueprint, request, jsonify

from onboarding.exceptions import WebhookAuthenticityError


def init_billing(engine, processor):
    """Initialize billing blueprint with the reconciliation engine."""
    billing_bp = Blueprint('billing', __name__, url_prefix='/v2/billing')

    @billing_bp.route('/webhook', methods=['POST'])
    def stripe_webhook():
        """
        Handle Stripe webhook events.

        Returns 200 {'status': ..., 'event_id': ...} for any authentic
        delivery, 401 on a bad signature.
        """
        payload = request.get_data()
        sig_header = request.headers.get('Stripe-Signature')

        if not processor.webhook_secret:
            print("[STRIPE] WARNING: STRIPE_WEBHOOK_SECRET not configured", flush=True)
            return jsonify({'error': 'Webhook secret not configured'}), 500

        try:
            outcome = engine.receive(payload, sig_header)
        except WebhookAuthenticityError as e:
            print(f"[STRIPE] Rejected webhook: {e}", flush=True)
            return jsonify({'error': 'Invalid signature'}), 401

        return jsonify(outcome), 200

    @billing_bp.route('/health', methods=['GET'])
    def billing_health():
        """Health check for billing module."""
        return jsonify({
            'status': 'ok',
            'module': 'billing',
            'stripe_configured': processor.configured,
            'webhook_secret_configured': bool(processor.webhook_secret)
        })

    return billing_bp
