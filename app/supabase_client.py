import os
import logging
from supabase import create_client, Client
from dotenv import load_dotenv

logger = logging.getLogger(__name__)

load_dotenv()

SUPABASE_URL = os.environ.get("SUPABASE_URL") or os.environ.get("NEXT_PUBLIC_SUPABASE_URL")
SUPABASE_KEY = os.environ.get("SUPABASE_SERVICE_ROLE_KEY")  # Use service role for backend
SUPABASE_ANON_KEY = os.environ.get("SUPABASE_ANON_KEY") or os.environ.get("NEXT_PUBLIC_SUPABASE_ANON_KEY")

if not SUPABASE_URL:
    logger.warning("SUPABASE_URL not set. Job storage will be unavailable.")
    supabase: Client | None = None
else:
    # Use service role key if available (full access), otherwise anon key
    key_to_use = SUPABASE_KEY or SUPABASE_ANON_KEY
    if key_to_use:
        supabase: Client = create_client(SUPABASE_URL, key_to_use)
    else:
        logger.warning("No Supabase key found. Job storage will be unavailable.")
        supabase = None


def get_supabase() -> Client | None:
    """Get the Supabase client instance."""
    return supabase
