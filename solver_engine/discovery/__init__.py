"""
Discovery package.

Sources that find intents and hand them to the engine.
"""

from solver_engine.discovery.order_cache import OrderCacheDiscovery

__all__ = ["OrderCacheDiscovery"]
