"""
Hub caching package.

Wraps the external key-value store with logical TTLs, a key index for
prefix invalidation, and hash helpers used for counters.
"""
