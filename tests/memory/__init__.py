"""
Memory safety tests.

Tests for trampoline lifetime, scratch memory and ownership under stress.
"""
