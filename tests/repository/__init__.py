"""
Metadata repository and typelib document tests.

Maps to: girbridge/repository.py, girbridge/typelib.py
"""
