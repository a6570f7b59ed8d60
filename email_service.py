"""
TradeSphere Email Notifications

Transactional mail for onboarding and billing events, sent through Resend.
Delivery is best-effort: a failed send is logged and never fails the
operation that triggered it.
"""

import os
import sys
from html import escape
from string import Template
from typing import Dict, Any

import resend

# Initialize Resend
resend.api_key = os.environ.get('RESEND_API_KEY')

FROM_EMAIL = os.environ.get('FROM_EMAIL', 'TradeSphere <noreply@tradesphere.app>')
APP_URL = os.environ.get('APP_URL', 'http://localhost:3000')

_LAYOUT = Template("""
<div style="font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif; max-width: 520px; margin: 0 auto; padding: 40px 20px;">
    <h2 style="color: #1a1a2e; margin-bottom: 24px;">$heading</h2>
    $body
    <hr style="border: none; border-top: 1px solid #e0e0e0; margin: 32px 0;" />
    <p style="color: #8a8a9a; font-size: 12px;">
        TradeSphere - Run your trade business from one place
    </p>
</div>
""")

_BUTTON = Template("""
<a href="$url" style="display: inline-block; background: #0b6e4f; color: white; padding: 12px 24px; text-decoration: none; border-radius: 6px; font-weight: 500;">
    $label
</a>
""")

TEMPLATES = {
    'welcome': {
        'subject': 'Welcome to TradeSphere, $company_name',
        'heading': 'Your workspace is ready',
        'body': """
    <p style="color: #4a4a5a; line-height: 1.6;">
        Hi $first_name, $company_name is set up on the $plan_name plan.
        Your free trial runs until <strong>$trial_end_date</strong>; billing starts the day after.
    </p>
    <p style="color: #4a4a5a; line-height: 1.6;">
        We sent two small deposits to your bank account. They usually arrive in 1-2 business days.
        Confirm the amounts from your billing settings to activate automatic payments.
    </p>
    <p style="margin: 24px 0;">$button</p>
    <p style="color: #8a8a9a; font-size: 14px;">This sign-in link works once and expires in $link_ttl minutes.</p>
""",
        'button': 'Open TradeSphere',
    },
    'verification_failed': {
        'subject': 'We could not verify your bank account',
        'heading': 'Bank verification failed',
        'body': """
    <p style="color: #4a4a5a; line-height: 1.6;">
        Hi $first_name, we were unable to verify the bank account for $company_name.
        Please add a new payment method before your trial ends on $trial_end_date.
    </p>
    <p style="margin: 24px 0;">$button</p>
""",
        'button': 'Update payment method',
    },
    'payment_failed': {
        'subject': 'Payment failed for $company_name',
        'heading': 'Your latest payment did not go through',
        'body': """
    <p style="color: #4a4a5a; line-height: 1.6;">
        Hi $first_name, the ACH payment of $amount for $company_name failed.
        This is failure number $failure_count. Please check your bank account or update your payment method.
    </p>
    <p style="margin: 24px 0;">$button</p>
""",
        'button': 'Review billing',
    },
    'sign_in_link': {
        'subject': 'Your TradeSphere sign-in link',
        'heading': 'Sign in to TradeSphere',
        'body': """
    <p style="color: #4a4a5a; line-height: 1.6;">
        Use the button below to sign in. You can set a password once you are in.
    </p>
    <p style="margin: 24px 0;">$button</p>
    <p style="color: #8a8a9a; font-size: 14px;">
        This link works once and expires in $link_ttl minutes. If you didn't request it, you can safely ignore this email.
    </p>
""",
        'button': 'Sign in',
    },
}


class EmailNotifier:

    def __init__(self, from_email: str = FROM_EMAIL, app_url: str = APP_URL):
        self.from_email = from_email
        self.app_url = app_url.rstrip('/')

    def link_for(self, template: str, variables: Dict[str, Any]) -> str:
        if template in ('welcome', 'sign_in_link') and variables.get('session_token'):
            return f"{self.app_url}/onboarding/continue?token={variables['session_token']}"
        return f"{self.app_url}/settings/billing"

    def render(self, template: str, variables: Dict[str, Any]) -> Dict[str, str]:
        """
        Render subject and HTML for a template.

        Raises:
            KeyError: unknown template
        """
        entry = TEMPLATES[template]
        values = {k: ('' if v is None else v) for k, v in variables.items()}
        # Subjects are plain text; only the HTML body needs escaping
        escaped = {k: escape(str(v)) for k, v in values.items()}
        url = escape(self.link_for(template, variables))
        button = _BUTTON.safe_substitute(url=url, label=entry['button'])
        body = Template(entry['body']).safe_substitute(escaped, button=button)
        return {
            'subject': Template(entry['subject']).safe_substitute(values),
            'html': _LAYOUT.safe_substitute(heading=entry['heading'], body=body),
        }

    def send(self, email: str, template: str, variables: Dict[str, Any]) -> bool:
        """
        Send a templated email.

        Returns:
            True if handed to Resend, False if skipped or failed
        """
        try:
            message = self.render(template, variables)
            if not resend.api_key:
                print(f"[EMAIL] No RESEND_API_KEY - would send '{template}' to {email}", file=sys.stderr)
                return False
            resend.Emails.send({
                "from": self.from_email,
                "to": [email],
                "subject": message['subject'],
                "html": message['html'],
            })
            print(f"[EMAIL] Sent '{template}' to {email}", file=sys.stderr)
            return True
        except Exception as e:
            print(f"[EMAIL] Send failed for '{template}' to {email}: {e}", file=sys.stderr)
            return False
