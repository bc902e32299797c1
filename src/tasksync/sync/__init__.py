"""Connectivity, remote stores, and the sync engine."""
