"""
Ownership bridge tests.

Maps to: girbridge/ownership.py
"""
