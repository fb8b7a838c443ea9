"""Shared Supabase connection utilities.

The pipeline talks to Supabase with the service-role key, so every
caller goes through :func:`get_supabase_client` to get a client bound to
the configured schema.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Optional

from supabase import Client, ClientOptions, create_client

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SupabaseConfig:
    """Configuration for Supabase connection.

    Attributes:
        url: Supabase project URL
        key: Supabase API key (service role for batch work)
        schema: Database schema to use (default: public)
    """

    url: str
    key: str
    schema: str = "public"

    @classmethod
    def from_env(
        cls,
        url_var: str = "SUPABASE_URL",
        key_vars: tuple[str, ...] = ("SUPABASE_SERVICE_ROLE_KEY", "SUPABASE_KEY"),
        schema_var: str = "SUPABASE_SCHEMA",
    ) -> SupabaseConfig:
        """Create configuration from environment variables.

        Args:
            url_var: Environment variable name for URL
            key_vars: Environment variable names for the key, first match wins
            schema_var: Environment variable name for schema

        Returns:
            SupabaseConfig instance

        Raises:
            ValueError: If required environment variables are not set
        """
        url = os.getenv(url_var)
        key = next((os.getenv(name) for name in key_vars if os.getenv(name)), None)
        schema = os.getenv(schema_var, "public")

        if not url or not key:
            raise ValueError(
                f"Missing required environment variables: {url_var} and/or "
                f"{' or '.join(key_vars)}. Please set them in your .env file or environment."
            )

        return cls(url=url, key=key, schema=schema)


def get_supabase_client(config: Optional[SupabaseConfig] = None) -> Client:
    """Create Supabase client.

    Args:
        config: Optional SupabaseConfig. If None, loads from environment.

    Returns:
        Supabase client instance

    Example:
        >>> client = get_supabase_client()
        >>> response = client.table("subject_rollups").select("subject_id").limit(1).execute()
    """
    if config is None:
        config = SupabaseConfig.from_env()

    logger.debug("Creating Supabase client for %s", config.url)

    options = ClientOptions(schema=config.schema or "public")
    client = create_client(config.url, config.key, options=options)

    if config.schema and config.schema != "public":
        logger.debug("Using schema: %s", config.schema)

    return client
