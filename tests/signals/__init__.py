"""
Signal dispatcher tests.

Maps to: girbridge/signals.py
"""
