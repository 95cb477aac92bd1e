"""Operator HTTP API mounted under /api/security."""
