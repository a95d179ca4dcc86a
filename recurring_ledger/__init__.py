"""
Recurring Ledger - Source Package

A multi-user financial ledger with a recurring-transaction scheduler
that materializes due occurrences into ledger transactions.

DESIGN PRINCIPLES:
1. Every transaction obeys the directional account invariant
2. One due occurrence produces exactly one transaction
3. Transaction insert, balance update and cursor advance commit together
4. Fail visibly: failures are recorded on the rule and audited
5. Storage layer is swappable
"""

__version__ = "1.0.0"
__author__ = "Recurring Ledger Team"
