"""
MDA Kernel - universal finance posting engine core

Turns semantically tagged business events into balanced GL journals with:
- Typed category tags and per-category contexts
- Table-driven VAT per jurisdiction
- Fiscal period gating with lazy, race-safe period creation
- Idempotent, atomic posting
- Hash-chained audit trail
"""

__version__ = "0.1.0"
