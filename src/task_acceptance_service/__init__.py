"""Task acceptance and lifecycle service."""
