"""
API route modules.
"""

from . import accounts, gas, queue, leaderboard

__all__ = ["accounts", "gas", "queue", "leaderboard"]
