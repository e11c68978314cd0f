"""Audit trail and metrics export."""
