"""
Billing services.
"""
