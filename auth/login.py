"""
Owner Sign-in
Domain: Identity

POST /v2/auth/login                   - email + password -> JWT
POST /v2/auth/onboarding-link         - one-time onboarding token -> JWT
POST /v2/auth/onboarding-link/resend  - mail a fresh onboarding link
POST /v2/auth/password                - set password (JWT)
GET  /v2/auth/me                      - current owner (JWT)
"""

from flask import Blueprint, request, jsonify, g

from . import generate_jwt, verify_password, require_jwt
from .directory import ONBOARDING_LINK_TTL_MINUTES
from onboarding.validation import MIN_PASSWORD_LENGTH


def _session(user):
    token = generate_jwt(
        user_id=str(user['id']),
        email=user['email'],
        tenant_id=str(user['tenant_id']) if user.get('tenant_id') else None
    )
    return {
        'token': token,
        'user': {
            'id': str(user['id']),
            'email': user['email'],
            'name': user.get('name'),
            'tenant_id': str(user['tenant_id']) if user.get('tenant_id') else None
        }
    }


def init_login(directory, notifier=None):
    """Initialize sign-in routes with the user directory and mailer."""
    login_bp = Blueprint('login', __name__, url_prefix='/v2/auth')

    @login_bp.route('/login', methods=['POST'])
    def login():
        """
        Authenticate an owner and return a JWT.

        Request body:
        {
            "email": "owner@example.com",
            "password": "SecurePass123"
        }
        """
        data = request.get_json(silent=True) or {}

        email = str(data.get('email') or '').strip().lower()
        password = data.get('password') or ''

        if not email or not password:
            return jsonify({'error': 'Email and password required'}), 400

        try:
            user = directory.find_account(email)
        except Exception as e:
            print(f"[LOGIN] Lookup failed for {email}: {e}", flush=True)
            return jsonify({'error': 'Login failed'}), 500

        # Same error for unknown user and wrong password
        if not user or not verify_password(password, user['password_hash']):
            return jsonify({'error': 'Invalid credentials'}), 401

        if user.get('status') != 'active':
            return jsonify({'error': 'Account disabled'}), 401

        return jsonify(_session(user)), 200

    @login_bp.route('/onboarding-link', methods=['POST'])
    def onboarding_link():
        """
        Exchange the one-time token from the welcome email for a session.

        Request body:
        {
            "token": "token_from_email"
        }

        Returns:
        {
            "token": "jwt_token",
            "user": {"id", "email", "name", "tenant_id"}
        }
        """
        data = request.get_json(silent=True) or {}
        raw_token = str(data.get('token') or '').strip()

        if not raw_token:
            return jsonify({'error': 'Token required'}), 400

        try:
            user = directory.redeem_session_token(raw_token)
        except Exception as e:
            print(f"[LOGIN] Onboarding link redemption failed: {e}", flush=True)
            return jsonify({'error': 'Could not redeem link'}), 500

        if not user:
            return jsonify({'error': 'Invalid or expired link'}), 400

        print(f"[LOGIN] Onboarding link used by {user['email']}", flush=True)
        return jsonify(_session(user)), 200

    @login_bp.route('/onboarding-link/resend', methods=['POST'])
    def resend_onboarding_link():
        """
        Mail a fresh one-time sign-in link.

        Request body:
        {
            "email": "owner@example.com"
        }

        Note: Always returns success to prevent email enumeration.
        """
        data = request.get_json(silent=True) or {}
        email = str(data.get('email') or '').strip().lower()

        if not email:
            return jsonify({'error': 'Email required'}), 400

        success_message = {'message': 'If an account exists with this email, a sign-in link has been sent.'}

        try:
            if not directory.account_exists(email):
                return jsonify(success_message), 200
            raw_token = directory.issue_session_token(email)
        except Exception as e:
            print(f"[LOGIN] Could not issue sign-in link for {email}: {e}", flush=True)
            return jsonify({'error': 'Request failed'}), 500

        if notifier is None:
            print(f"[LOGIN] No notifier - sign-in link for {email} not sent", flush=True)
            return jsonify(success_message), 200

        try:
            notifier.send(email, 'sign_in_link', {
                'session_token': raw_token,
                'link_ttl': ONBOARDING_LINK_TTL_MINUTES,
            })
        except Exception as e:
            print(f"[LOGIN] Sign-in link email failed for {email}: {e}", flush=True)

        return jsonify(success_message), 200

    @login_bp.route('/password', methods=['POST'])
    @require_jwt
    def set_password():
        """
        Set the signed-in owner's password.

        Owners created from a webhook only have a random password until
        they set one here after following their sign-in link.

        Request body:
        {
            "password": "NewSecurePassword123"
        }
        """
        data = request.get_json(silent=True) or {}
        password = data.get('password') or ''

        if len(password) < MIN_PASSWORD_LENGTH:
            return jsonify({'error': f'Password must be at least {MIN_PASSWORD_LENGTH} characters'}), 400

        user_id = g.current_user.get('sub')
        try:
            updated = directory.set_password(user_id, password)
        except Exception as e:
            print(f"[LOGIN] Password update failed for {user_id}: {e}", flush=True)
            return jsonify({'error': 'Password update failed'}), 500

        if not updated:
            return jsonify({'error': 'Account not found'}), 404

        print(f"[LOGIN] Password set for {user_id}", flush=True)
        return jsonify({'message': 'Password updated'}), 200

    @login_bp.route('/me', methods=['GET'])
    @require_jwt
    def me():
        """Return the signed-in owner from the JWT claims."""
        claims = g.current_user
        return jsonify({
            'id': claims.get('sub'),
            'email': claims.get('email'),
            'tenant_id': claims.get('tenant_id')
        }), 200

    return login_bp
