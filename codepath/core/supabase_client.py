"""Supabase client backing the persisted learning path store."""

import logging

from supabase import Client, create_client

from codepath.config import settings

logger = logging.getLogger(__name__)

_supabase_client: Client | None = None


def get_supabase_client() -> Client:
    """
    Create the Supabase client on first use and reuse it afterwards.

    Raises:
        ValueError: SUPABASE_URL or SUPABASE_SERVICE_KEY is missing
    """
    global _supabase_client

    if _supabase_client is None:
        missing = [
            name
            for name, value in (
                ("SUPABASE_URL", settings.supabase_url),
                ("SUPABASE_SERVICE_KEY", settings.supabase_service_key),
            )
            if not value
        ]
        if missing:
            raise ValueError(f"Supabase persistence requires {', '.join(missing)}")

        _supabase_client = create_client(settings.supabase_url, settings.supabase_service_key)
        logger.info(f"💾 Supabase client initialized for {settings.supabase_url}")

    return _supabase_client
