"""
User Directory
Domain: Identity

Owner accounts (the authentication principal) in the users table, plus the
one-time onboarding links mailed after signup. Links are stored hashed,
same as password reset tokens.
"""

import os
import sys
import uuid
import secrets
from typing import Optional, Dict, Any

from psycopg2.extras import Json

from . import hash_password, hash_token

ONBOARDING_LINK_TTL_MINUTES = int(os.environ.get('ONBOARDING_LINK_TTL_MINUTES', 60))


class UserDirectory:

    def __init__(self, get_db, get_cursor):
        self.get_db = get_db
        self.get_cursor = get_cursor

    def account_exists(self, email: str) -> bool:
        cur = self.get_cursor()
        try:
            cur.execute('SELECT id FROM users WHERE email = %s', (email.lower(),))
            return cur.fetchone() is not None
        finally:
            cur.close()

    def find_account(self, email: str) -> Optional[Dict[str, Any]]:
        cur = self.get_cursor()
        try:
            cur.execute(
                '''SELECT id, email, password_hash, name, tenant_id, status
                   FROM users WHERE email = %s''',
                (email.lower(),)
            )
            user = cur.fetchone()
            return dict(user) if user else None
        finally:
            cur.close()

    def create_account(self, email: str, password: Optional[str], profile: Dict[str, Any]) -> str:
        """
        Create an owner account.

        Args:
            email: Login email (unique)
            password: Chosen password, or None to set an unguessable one
                      (owner signs in through the onboarding link instead)
            profile: first_name / last_name / full_name metadata

        Returns:
            New account id
        """
        if password is None:
            password = secrets.token_urlsafe(24)

        user_id = str(uuid.uuid4())
        db = self.get_db()
        cur = self.get_cursor()
        try:
            cur.execute(
                '''INSERT INTO users (id, email, password_hash, name, profile, status, created_at, updated_at)
                   VALUES (%s, %s, %s, %s, %s, 'active', NOW(), NOW())''',
                (user_id, email.lower(), hash_password(password),
                 profile.get('full_name'), Json(profile))
            )
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            cur.close()

        print(f"[DIRECTORY] Created account {user_id} for {email}", file=sys.stderr)
        return user_id

    def delete_account(self, account_id: str) -> None:
        """Remove an account. Used only to compensate a failed tenant creation."""
        db = self.get_db()
        cur = self.get_cursor()
        try:
            cur.execute('DELETE FROM onboarding_session_tokens WHERE user_id = %s', (account_id,))
            cur.execute('DELETE FROM users WHERE id = %s', (account_id,))
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            cur.close()

        print(f"[DIRECTORY] Deleted account {account_id}", file=sys.stderr)

    def link_tenant(self, account_id: str, tenant_id: str) -> None:
        db = self.get_db()
        cur = self.get_cursor()
        try:
            cur.execute(
                'UPDATE users SET tenant_id = %s, updated_at = NOW() WHERE id = %s',
                (tenant_id, account_id)
            )
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            cur.close()

    def set_password(self, account_id: str, password: str) -> bool:
        """Replace the account password. Returns False for an unknown account."""
        db = self.get_db()
        cur = self.get_cursor()
        try:
            cur.execute(
                '''UPDATE users SET password_hash = %s, updated_at = NOW()
                   WHERE id = %s RETURNING id''',
                (hash_password(password), account_id)
            )
            updated = cur.fetchone() is not None
            db.commit()
            return updated
        except Exception:
            db.rollback()
            raise
        finally:
            cur.close()

    def issue_session_token(self, email: str) -> str:
        """
        Issue a one-time onboarding token for the owner.

        Any earlier unused token for the same account is invalidated.

        Returns:
            Raw token (only its hash is stored)

        Raises:
            LookupError: no account for the email
        """
        db = self.get_db()
        cur = self.get_cursor()
        try:
            cur.execute('SELECT id FROM users WHERE email = %s', (email.lower(),))
            user = cur.fetchone()
            if not user:
                raise LookupError(f'no account for {email}')

            raw_token = secrets.token_urlsafe(32)

            cur.execute(
                '''UPDATE onboarding_session_tokens SET used_at = NOW()
                   WHERE user_id = %s AND used_at IS NULL''',
                (str(user['id']),)
            )
            cur.execute(
                '''INSERT INTO onboarding_session_tokens (user_id, token_hash, expires_at)
                   VALUES (%s, %s, NOW() + make_interval(mins => %s))''',
                (str(user['id']), hash_token(raw_token), ONBOARDING_LINK_TTL_MINUTES)
            )
            db.commit()
            return raw_token
        except Exception:
            db.rollback()
            raise
        finally:
            cur.close()

    def redeem_session_token(self, raw_token: str) -> Optional[Dict[str, Any]]:
        """
        Consume a one-time onboarding token.

        Returns:
            {'id', 'email', 'name', 'tenant_id'} of the owner, or None if the
            token is unknown, expired or already used
        """
        db = self.get_db()
        cur = self.get_cursor()
        try:
            cur.execute(
                '''UPDATE onboarding_session_tokens SET used_at = NOW()
                   WHERE token_hash = %s
                     AND used_at IS NULL
                     AND expires_at > NOW()
                   RETURNING user_id''',
                (hash_token(raw_token),)
            )
            row = cur.fetchone()
            if not row:
                db.commit()
                return None

            cur.execute(
                'SELECT id, email, name, tenant_id FROM users WHERE id = %s',
                (str(row['user_id']),)
            )
            user = cur.fetchone()
            db.commit()
            return dict(user) if user else None
        except Exception:
            db.rollback()
            raise
        finally:
            cur.close()
