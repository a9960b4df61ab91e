"""Shared infrastructure for Zenna services (config, logging, errors, LLM routing)."""
