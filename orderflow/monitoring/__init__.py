"""Logging, metrics, health checks and the security/audit log."""
