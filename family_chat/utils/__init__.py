"""
Shared utilities: error vocabulary, admission control and keyed locks.
"""
