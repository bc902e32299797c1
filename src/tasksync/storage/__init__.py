"""Durable per-user storage: atomic files, locks, task store, pending-ops log."""
