"""Settlement domain models."""
