"""Version 1 of the catalog search HTTP API."""
