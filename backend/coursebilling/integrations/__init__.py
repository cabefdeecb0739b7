"""
External service clients: payment gateways and push notifications.
"""
