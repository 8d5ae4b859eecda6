"""
Logging tests.

Maps to: girbridge/_logging.py
"""
