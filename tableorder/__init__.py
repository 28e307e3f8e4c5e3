"""
                Table Ordering Service

Multi-tenant restaurant ordering backend: diners at a table share one
realtime cart, checkout turns it into an immutable order, and the kitchen
works a live queue of active orders.

Version: 1.0.0
License: MIT
"""

__version__ = "1.0.0"
