"""Domain, configuration and table models."""
