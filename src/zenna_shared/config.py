"""
Centralized configuration for the Zenna turn service.

All values come from environment variables (optionally loaded from a .env file
at startup) with code defaults only for non-sensitive, optional settings.
Call ``get_config().validate_or_exit()`` at service startup to fail fast with
clear errors.
"""
import os
import sys
import logging
from dataclasses import dataclass, field
from typing import List, Tuple

logger = logging.getLogger(__name__)


def _env_float(name: str, default: str) -> float:
    return float(os.environ.get(name, default))


def _env_int(name: str, default: str) -> int:
    return int(os.environ.get(name, default))


def _env_offsets(name: str, default: str) -> Tuple[float, ...]:
    """Parse a comma separated list of seconds, e.g. "10,25,45"."""
    raw = os.environ.get(name, default)
    offsets = [float(part) for part in raw.split(",") if part.strip()]
    return tuple(sorted(offsets))


@dataclass
class ZennaConfig:
    """
    Configuration container with validation.

    Precedence (highest to lowest):
    1. Environment variables
    2. .env file (loaded by the app entrypoint)
    3. Code defaults (non-sensitive values only)
    """

    # =========================================================================
    # Collaborator endpoints
    # =========================================================================

    # Identity / master config / routines / audit log backend
    admin_api_url: str = field(default_factory=lambda: os.environ.get("ADMIN_API_URL", ""))
    service_api_key: str = field(default_factory=lambda: os.environ.get("SERVICE_API_KEY", ""))

    # Vector memory store
    memory_backend: str = field(default_factory=lambda: os.environ.get("MEMORY_BACKEND", "qdrant").lower())
    qdrant_url: str = field(default_factory=lambda: os.environ.get("QDRANT_URL", "http://localhost:6333"))
    qdrant_api_key: str = field(default_factory=lambda: os.environ.get("QDRANT_API_KEY", ""))
    qdrant_collection: str = field(default_factory=lambda: os.environ.get("QDRANT_COLLECTION", "zenna-memories"))
    embedding_model: str = field(default_factory=lambda: os.environ.get(
        "EMBEDDING_MODEL", "sentence-transformers/all-MiniLM-L6-v2"
    ))

    # Generation
    llm_provider: str = field(default_factory=lambda: os.environ.get("LLM_PROVIDER", "anthropic").lower())
    llm_model: str = field(default_factory=lambda: os.environ.get("LLM_MODEL", "claude-sonnet-4-20250514"))
    anthropic_api_key: str = field(default_factory=lambda: os.environ.get("ANTHROPIC_API_KEY", ""))
    ollama_url: str = field(default_factory=lambda: os.environ.get("OLLAMA_URL", "http://localhost:11434"))
    llm_temperature: float = field(default_factory=lambda: _env_float("LLM_TEMPERATURE", "0.2"))
    llm_max_tokens: int = field(default_factory=lambda: _env_int("LLM_MAX_TOKENS", "2048"))
    llm_max_tool_iterations: int = field(default_factory=lambda: _env_int("LLM_MAX_TOOL_ITERATIONS", "5"))

    # Third-party integrations
    lighting_api_url: str = field(default_factory=lambda: os.environ.get(
        "LIGHTING_API_URL", "https://api.meethue.com/route/clip/v2/resource"
    ))
    workspace_api_url: str = field(default_factory=lambda: os.environ.get(
        "WORKSPACE_API_URL", "https://api.notion.com/v1"
    ))
    web_search_url: str = field(default_factory=lambda: os.environ.get(
        "WEB_SEARCH_URL", "https://api.duckduckgo.com/"
    ))

    # Identity that always holds every elevated grant
    primary_admin_email: str = field(default_factory=lambda: os.environ.get("PRIMARY_ADMIN_EMAIL", ""))

    # =========================================================================
    # Timing budgets (seconds)
    # =========================================================================

    identity_timeout: float = field(default_factory=lambda: _env_float("IDENTITY_TIMEOUT", "5"))
    history_timeout: float = field(default_factory=lambda: _env_float("HISTORY_TIMEOUT", "5"))
    memory_timeout: float = field(default_factory=lambda: _env_float("MEMORY_TIMEOUT", "8"))
    fact_write_timeout: float = field(default_factory=lambda: _env_float("FACT_WRITE_TIMEOUT", "5"))
    thinking_offsets: Tuple[float, ...] = field(default_factory=lambda: _env_offsets("THINKING_OFFSETS", "10,25,45"))
    hard_generation_timeout: float = field(default_factory=lambda: _env_float("HARD_GENERATION_TIMEOUT", "60"))
    tool_timeout: float = field(default_factory=lambda: _env_float("TOOL_TIMEOUT", "20"))

    # Number of most recent turns replayed to the model (storage is unbounded)
    history_window: int = field(default_factory=lambda: _env_int("HISTORY_WINDOW", "50"))

    # =========================================================================
    # Validation
    # =========================================================================

    def validate(self) -> List[str]:
        """
        Validate configuration and return list of errors.

        Returns:
            List of error messages (empty if valid)
        """
        errors = []

        if not self.admin_api_url:
            errors.append(
                "ADMIN_API_URL is required but not set.\n"
                "  Set via environment variable: export ADMIN_API_URL='http://admin-backend:8080'"
            )

        if self.memory_backend not in ("qdrant", "memory"):
            errors.append(
                f"MEMORY_BACKEND must be 'qdrant' or 'memory', got '{self.memory_backend}'."
            )
        elif self.memory_backend == "qdrant" and not self.qdrant_url:
            errors.append("QDRANT_URL is required when MEMORY_BACKEND=qdrant.")

        if self.llm_provider not in ("anthropic", "ollama"):
            errors.append(
                f"LLM_PROVIDER must be 'anthropic' or 'ollama', got '{self.llm_provider}'."
            )

        if not self.thinking_offsets:
            errors.append("THINKING_OFFSETS must contain at least one offset.")
        elif self.thinking_offsets[-1] >= self.hard_generation_timeout:
            errors.append(
                "The last THINKING_OFFSETS value must be below HARD_GENERATION_TIMEOUT."
            )

        if self.llm_provider == "anthropic" and not self.anthropic_api_key:
            # Users or the master config may still supply a key at runtime
            logger.warning(
                "ANTHROPIC_API_KEY not set. Generation will require a key from "
                "the master config or user settings."
            )

        return errors

    def validate_or_exit(self, service_name: str = "zenna"):
        """Validate configuration and exit with clear error if invalid."""
        errors = self.validate()
        if errors:
            print(f"\n{'='*60}", file=sys.stderr)
            print(f"CONFIGURATION ERROR - {service_name} cannot start", file=sys.stderr)
            print(f"{'='*60}\n", file=sys.stderr)
            for i, error in enumerate(errors, 1):
                print(f"{i}. {error}\n", file=sys.stderr)
            print(f"{'='*60}", file=sys.stderr)
            sys.exit(1)


# Singleton instance
config = ZennaConfig()


def get_config() -> ZennaConfig:
    """Get the singleton config instance."""
    return config
