"""Command-line interface for AI Catalog."""
