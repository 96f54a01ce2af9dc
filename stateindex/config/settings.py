"""
Configuration settings for StateIndex.

This module provides the configuration management for the indexer: the
database connection, logging, chain identity, the code-id registry used by
transformers and formulas to recognize contract families, and tuning knobs
for computation invalidation and bulk writes.

Values are resolved from explicit keyword overrides first, then environment
variables, then the defaults declared on the class.
"""

import json
import logging
import os
from typing import Any


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


class Settings:
    """Indexer configuration settings"""

    # Framework identity
    FRAMEWORK_NAME = "stateindex"

    # Database settings
    DATABASE_URL = "sqlite:///stateindex.db"
    DATABASE_ECHO = False

    # Chain settings
    CHAIN_ID = "unknown"

    # Computation cache settings
    INVALIDATION_EXTEND_LATEST = True  # Opportunistically extend the latest computation per formula
    BULK_CHUNK_SIZE = 500  # Maximum rows per bulk upsert statement

    # Logging settings
    LOG_LEVEL = "INFO"
    LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

    def __init__(self, **overrides: Any):
        self.DATABASE_URL = os.getenv("DATABASE_URL", self.DATABASE_URL)
        self.DATABASE_ECHO = _env_bool("DATABASE_ECHO", self.DATABASE_ECHO)
        self.CHAIN_ID = os.getenv("CHAIN_ID", self.CHAIN_ID)
        self.INVALIDATION_EXTEND_LATEST = _env_bool(
            "INVALIDATION_EXTEND_LATEST", self.INVALIDATION_EXTEND_LATEST
        )
        self.BULK_CHUNK_SIZE = int(os.getenv("BULK_CHUNK_SIZE", str(self.BULK_CHUNK_SIZE)))
        self.LOG_LEVEL = os.getenv("LOG_LEVEL", self.LOG_LEVEL)
        self.LOG_FORMAT = os.getenv("LOG_FORMAT", self.LOG_FORMAT)
        self.CODE_IDS: dict[str, list[int]] = self._load_code_ids()

        for name, value in overrides.items():
            if not hasattr(self, name):
                raise AttributeError(f"Unknown setting '{name}'")
            setattr(self, name, value)

        self.validate()

    @staticmethod
    def _load_code_ids() -> dict[str, list[int]]:
        """Load the code-id registry from CODE_IDS (JSON) or CODE_IDS_FILE."""
        raw = os.getenv("CODE_IDS")
        path = os.getenv("CODE_IDS_FILE")
        if raw is None and path:
            with open(path, "r", encoding="utf-8") as fh:
                raw = fh.read()
        if not raw:
            return {}

        data = json.loads(raw)
        return {str(key): [int(code_id) for code_id in code_ids] for key, code_ids in data.items()}

    def validate(self) -> None:
        """
        Validate settings.

        Raises:
            ValueError: If a setting is out of range or malformed
        """
        if self.BULK_CHUNK_SIZE < 1:
            raise ValueError(f"BULK_CHUNK_SIZE must be positive, got {self.BULK_CHUNK_SIZE}")
        if logging.getLevelName(str(self.LOG_LEVEL).upper()) == f"Level {str(self.LOG_LEVEL).upper()}":
            raise ValueError(f"Unknown LOG_LEVEL '{self.LOG_LEVEL}'")
        for key, code_ids in self.CODE_IDS.items():
            if not all(isinstance(code_id, int) and not isinstance(code_id, bool) for code_id in code_ids):
                raise ValueError(f"Code IDs for '{key}' must be integers")

    def get_code_ids_for_keys(self, *keys: str) -> list[int]:
        """
        Resolve code-id keys (e.g. "dao-core") to the code ids registered for them.

        Args:
            *keys: Code-id keys

        Returns:
            Registered code ids, in key order, without duplicates
        """
        code_ids: list[int] = []
        for key in keys:
            for code_id in self.CODE_IDS.get(key, []):
                if code_id not in code_ids:
                    code_ids.append(code_id)
        return code_ids

    def get_database_config(self) -> dict[str, Any]:
        """Get database configuration"""
        return {
            "url": self.DATABASE_URL,
            "echo": self.DATABASE_ECHO,
            "chunk_size": self.BULK_CHUNK_SIZE
        }

    def get_logging_config(self) -> dict[str, Any]:
        """Get logging configuration"""
        return {
            "level": str(self.LOG_LEVEL).upper(),
            "format": self.LOG_FORMAT
        }


def configure_logging(settings: Settings) -> None:
    """Apply the logging level and format from settings to the root logger."""
    config = settings.get_logging_config()
    logging.basicConfig(level=config["level"], format=config["format"])
