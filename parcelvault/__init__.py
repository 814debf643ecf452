"""
Backend package for the parcel tracking service.

This package provides the pricing, search, package lifecycle and backup
rotation engine, plus a FastAPI application with database and blob-store
abstractions that can run fully in memory for tests and local development.
"""
