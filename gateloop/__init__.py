"""
gateloop - Gate-verified agent loop for project checkouts.

This package drives the plan/implement/verify/fix workflow by reading the
progress ledger, dispatching the coding agent for the matching phase and
running verification gates until the project is done.
"""

__version__ = "0.1.0"
