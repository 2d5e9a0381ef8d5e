"""
FastAPI Application Package

Entry point for the HTTP API serving opportunities and connector health.
"""
