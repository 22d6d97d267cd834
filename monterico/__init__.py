"""
Monterico - Household Ledger

Tracks a household's shared and personal money under one of two
accounting modes, and guards every bank operation behind a passkey
step-up.

DESIGN PRINCIPLES:
1. Every operation is one database transaction
2. Fail early, fail visibly
3. No silent corrections (split totals are checked, never adjusted)
4. Every state change is auditable
5. Session state is server-authoritative
"""

__version__ = "1.0.0"
__author__ = "Monterico Team"
