"""Process-wide infrastructure: settings, logging, cache, database."""
