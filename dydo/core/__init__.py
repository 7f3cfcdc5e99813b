"""
Core guard primitives: command extraction and fail-closed handling.
"""
