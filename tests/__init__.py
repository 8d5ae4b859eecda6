"""
girbridge test suite.
"""
