"""Shared constants for URL prefixes."""

API_PREFIX = "/api"
