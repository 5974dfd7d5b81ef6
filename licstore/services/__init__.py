"""
Use cases that span more than one collection.

Callers that change License/System assignments go through these services
instead of writing either collection directly.
"""
