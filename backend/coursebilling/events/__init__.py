"""
In-process event bus used for fire-and-forget notification and analytics delivery.
"""
