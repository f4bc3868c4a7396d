"""
Cross-chain intent solver: order-lifecycle orchestration engine.
"""

__version__ = "0.1.0"
