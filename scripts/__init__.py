"""Operational scripts: audit trail and reconciliation CLI."""
