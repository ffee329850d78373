"""Forwarding proxy: request rewrites, upstream dispatch and the HTTP server."""
