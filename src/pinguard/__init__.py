"""
pinguard — SPKI public-key pinning policy engine.

Remotely delivered pinning policy, validated and swapped atomically, and a
per-handshake evaluator that turns observed public-key hashes into a verdict.
"""

__version__ = "0.1.0"
