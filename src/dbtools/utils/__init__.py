"""Locking, checksums, retention, notifications and admin helpers."""
