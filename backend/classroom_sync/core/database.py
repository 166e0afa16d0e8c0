"""
Database connections: Supabase client setup.
"""

from functools import lru_cache
from supabase import create_client, Client

from classroom_sync.config import get_settings
from classroom_sync.core.exceptions import RegistryUnavailableError


@lru_cache
def get_supabase_client() -> Client:
    """Get the Supabase client (singleton).

    The sync service writes device state and reads secrets, so it prefers the
    service_role key and falls back to the anon key.
    """
    settings = get_settings()
    if not settings.SUPABASE_URL:
        raise RegistryUnavailableError("SUPABASE_URL not configured")
    key = settings.SUPABASE_SERVICE_KEY or settings.SUPABASE_KEY
    return create_client(settings.SUPABASE_URL, key)
