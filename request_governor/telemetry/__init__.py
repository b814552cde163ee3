"""Audit dispatch, security events and logging setup."""
