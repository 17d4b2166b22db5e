"""HTTP API for the Pollgate service."""
