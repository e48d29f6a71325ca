"""
sbtoolkit: Azure Service Bus operator toolkit

Drain, inspect and re-inject messages on session-capable queues and
subscriptions.
"""

__version__ = "0.1.0"

__all__ = ["__version__"]
