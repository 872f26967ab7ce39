"""Service catalog cache and synchronization layer."""
