"""Supabase client used by the plan store when credentials are configured."""

import logging
from functools import lru_cache

from supabase import Client, create_client

from ..config import settings


@lru_cache()
def get_supabase_client() -> Client | None:
    """Return the process-wide Supabase client, or None when TABI_SUPABASE_URL/KEY are unset.

    Creating the client does not open a connection; queries may still fail later.
    """
    if not settings.supabase_url or not settings.supabase_key:
        logging.debug("Supabase credentials not configured (missing URL or key)")
        return None

    try:
        return create_client(settings.supabase_url, settings.supabase_key)
    except Exception as e:
        logging.error(f"Failed to create Supabase client: {e}")
        return None
