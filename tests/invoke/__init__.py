"""
Argument planning and invocation tests.

Maps to: girbridge/invoke/
"""
