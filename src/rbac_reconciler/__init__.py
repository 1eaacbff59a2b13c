"""Idempotent Azure role assignment reconciliation for deployment principals."""

__version__ = "0.1.0"
