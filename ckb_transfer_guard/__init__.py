"""
CKB Transfer Guard: idempotent payment submission for on-chain agents.

Checks a local transfer log (and optionally the chain) before a transfer is
broadcast, so a retried or racing agent never pays the same recipient twice
inside the idempotency window.
"""

__version__ = "0.1.0"
