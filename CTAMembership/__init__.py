"""
CTA Membership Bot

Paid membership lifecycle for the community server: activation codes are redeemed
for member roles, and roles are removed again when the purchase term expires
unless the member renewed.
"""

__all__ = [
    'admin_api',
    'audit_log',
    'claims',
    'embeds',
    'expiry',
    'main',
    'models',
    'notifier',
    'renewal',
    'resolver',
    'roles',
    'settings',
    'utils',
    'views',
    'webinar_ledger',
    'woo_api_client',
]
