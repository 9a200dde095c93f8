"""
Shared Kernel Module
====================

Generic infrastructure used by the tickets and outbox modules: structured
logging and HTTP middleware.

DO NOT add ticket or outbox business logic to the shared kernel.
"""

__version__ = "1.0.0"
