"""
Core configuration, errors, logging and security helpers.
"""
