"""
finledger - Source Package

The back end of a personal-finance dashboard: accounts, transactions,
savings goals and investments kept in a document database, with every
cached balance provably equal to the sum of its transactions.

DESIGN PRINCIPLES:
1. Balances move only inside one atomic store transaction
2. Fail early, fail visibly
3. No silent corrections; drift is reported, repairs are explicit
4. Every mutation must be auditable
5. Storage layer is swappable
"""

__version__ = "1.0.0"
__author__ = "finledger Team"
