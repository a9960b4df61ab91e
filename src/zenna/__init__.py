"""Zenna - a multi-tenant conversational companion turn service."""

__version__ = "0.1.0"
