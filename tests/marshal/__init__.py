"""
Value marshalling tests.

Tests for girbridge.marshal:
- Host -> native conversion and its validation
- Native -> host conversion and transfer handling
- Struct field access

Maps to: girbridge/marshal/
"""
