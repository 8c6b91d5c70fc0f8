"""Business logic services.

Services are called by route handlers and tasks. Helpers that take a
Session never commit; the caller owns the transaction.
"""
