"""Database configuration and adapter factory."""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from doccms.persistence.adapter import DocumentAdapter

MEMORY_URL = "memory://"


@dataclass
class DatabaseConfig:
    """Database connection configuration.

    Supports memory://, sqlite:/// and postgresql:// URL schemes.
    """

    url: str

    @classmethod
    def from_env(cls) -> DatabaseConfig:
        """Create config from environment variables.

        Resolution order:
        1. DOCCMS_DATABASE_URL env var
        2. DATABASE_URL env var (standard)
        3. Default: memory://
        """
        url = os.environ.get("DOCCMS_DATABASE_URL") or os.environ.get("DATABASE_URL")
        if url:
            return cls(url=url)
        return cls(url=MEMORY_URL)

    @property
    def is_memory(self) -> bool:
        return self.url.startswith("memory:")

    @property
    def is_sqlite(self) -> bool:
        return self.url.startswith("sqlite")

    @property
    def is_postgresql(self) -> bool:
        return self.url.startswith("postgresql")

    @property
    def sqlalchemy_url(self) -> str:
        """URL suitable for SQLAlchemy engine creation.

        Ensures postgresql:// URLs use the psycopg (v3) driver since
        the postgresql extra depends on psycopg[binary], not psycopg2.
        """
        if self.url.startswith("postgresql://"):
            return self.url.replace("postgresql://", "postgresql+psycopg://", 1)
        return self.url


def create_adapter(config: DatabaseConfig) -> DocumentAdapter:
    """Create a document adapter based on the database URL scheme.

    Args:
        config: Database configuration with URL.

    Returns:
        A DocumentAdapter instance (not yet connected).

    Raises:
        ValueError: For unsupported URL schemes.
    """
    if config.is_memory:
        from doccms.persistence.memory import MemoryAdapter

        return MemoryAdapter()

    if config.is_sqlite or config.is_postgresql:
        from doccms.persistence.sql import SQLAlchemyAdapter

        return SQLAlchemyAdapter(config.sqlalchemy_url)

    raise ValueError(f"Unsupported database URL scheme: {config.url}")
