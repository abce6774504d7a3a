"""Argus HTTP API (FastAPI)."""
