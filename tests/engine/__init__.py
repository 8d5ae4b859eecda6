"""
Engine facade and configuration tests.

Maps to: girbridge/engine.py, girbridge/config.py
"""
