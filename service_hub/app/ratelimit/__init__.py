"""
Per-client sliding window rate limiting.
"""
