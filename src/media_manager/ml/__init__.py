"""Model-related helpers for the local enrichment backend."""
