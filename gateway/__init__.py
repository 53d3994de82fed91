"""Serving core for shai.

Session lifecycle (``session``), the response store, SSE helpers, error
shapes and the FastAPI app (``server``) with its API families under
``gateway.apis``.
"""
