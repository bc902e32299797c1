"""Command-line shell around the sync engine."""
