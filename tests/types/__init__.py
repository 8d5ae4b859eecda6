"""
Type metadata tests.

Maps to: girbridge/types/
"""
