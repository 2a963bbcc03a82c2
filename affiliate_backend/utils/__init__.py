"""
Utils package for the affiliate backend.
"""

# Database helpers
from .db_helpers import (
    is_transient_db_error,
    is_missing_table_or_schema_error,
    is_missing_column_error,
    is_supabase_not_configured_error,
    db_call_with_retry,
)

# Auth helpers
from .auth_helpers import (
    JWT_SECRET,
    create_token,
    verify_token,
    get_user_id,
    normalize_email,
    security,
)

# Phone utilities
from .phone_utils import extract_phone_from_jid

__all__ = [
    # DB helpers
    "is_transient_db_error",
    "is_missing_table_or_schema_error",
    "is_missing_column_error",
    "is_supabase_not_configured_error",
    "db_call_with_retry",
    # Auth helpers
    "JWT_SECRET",
    "create_token",
    "verify_token",
    "get_user_id",
    "normalize_email",
    "security",
    # Phone utils
    "extract_phone_from_jid",
]
