"""
Filter and update languages evaluated against in-memory documents.

Both engines are pure: they never touch storage, so the file store and the
SQL backend interpret queries identically.
"""
