"""
Shared API
==========

Middleware and exception handlers for FastAPI applications.
"""
