"""
Shared test fixtures: the fake native library.
"""
