"""
Exception hierarchy tests.

Maps to: girbridge/exceptions/
"""
