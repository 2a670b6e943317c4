"""
Expense Chat Gateway

A chat front door to a personal expense ledger. A language model turns
messages into SQL; the gateway decides what, if anything, runs.

DESIGN PRINCIPLES:
1. Model output is untrusted input
2. Every statement is scoped to the requesting user
3. Fail closed, fail visibly
4. The gateway writes every confirmation, never the model
5. Every step must be auditable
"""

__version__ = "1.0.0"
__author__ = "Expense Gateway Team"
