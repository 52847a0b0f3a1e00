"""In-memory dependency graph utilities."""
