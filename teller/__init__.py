"""
Moltbank Teller

Sells NXT Layer accounts and gas bundles for USDC on BASE:
- Payment ingestion from the chain
- Tier-prioritized provisioning queue
- Serialized provisioning worker
- Referral payouts and points leaderboard
"""

__version__ = "0.1.0"
