"""
Deckforge - Property-Based Testing Suite

Hypothesis-driven checks for cache bookkeeping, key globs, metric keys,
retry backoff and job queue ordering.
"""
