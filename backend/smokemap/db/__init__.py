"""Cache storage for upstream response documents.

This package provides the cache entry model and the stores that persist
entries, with an in-memory backend for tests and a file backend for
production.
"""
