"""
memfabric Hooks Module

Patches chat SDK clients so memory is injected BEFORE the model call and
the exchange is stored AFTER it.

Usage:
    from memfabric.hooks import register, ChatProvider
    register(client, fabric, ChatProvider.ANTHROPIC)
"""

from .client_hooks import ChatProvider, register

__all__ = ["ChatProvider", "register"]
