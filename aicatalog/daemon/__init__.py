"""Capture engine for AI Catalog."""
