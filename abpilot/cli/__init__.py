"""Command line interface for abpilot."""
