"""
Core primitives shared by the store, the query language and the services:
configuration, logging setup, the error hierarchy and identifier helpers.
"""
