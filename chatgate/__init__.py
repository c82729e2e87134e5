"""Slack integration gateway: rate limiting, connection lifecycle, discovery scans and analysis jobs."""
