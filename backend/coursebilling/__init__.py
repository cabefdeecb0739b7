"""
Course marketplace billing service: subscriptions, payments, webhooks and disputes.
"""

__version__ = "1.0.0"
