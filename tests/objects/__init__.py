"""
Wrapper and identity table tests.

Maps to: girbridge/objects.py, girbridge/engine.py
"""
