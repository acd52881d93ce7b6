"""
Schema federation: fetch per-server capability documents and merge them
into one namespaced view.
"""
