"""
Split Ledger - Source Package

The core of a shared-expense application: a multi-currency balance engine
over a soft-deletable ledger, and a recurring scheduled-action engine that
materializes new ledger entries on a cadence.

DESIGN PRINCIPLES:
1. The ledger is append-only; deletion is a tombstone, never a removal
2. Balances and budgets are derived, never stored
3. Fail loudly on integrity violations, never guess
4. Every scheduled occurrence executes at most once
5. Storage layer is swappable
"""

__version__ = "1.0.0"
__author__ = "Split Ledger Team"
