"""Clients for third-party services reachable from a turn."""
