"""
Supabase access for the users table.

All reads and writes of billing columns go through UserStore. Each write
targets a single row; concurrent writers are last-writer-wins.
"""
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import httpx
from postgrest.exceptions import APIError
from supabase import Client, create_client

from billing_sync.config import Settings
from billing_sync.errors import DatabaseError, NotFound
from billing_sync.models import USER_COLUMNS, UserBillingRecord

logger = logging.getLogger(__name__)

USERS_TABLE = "users"


def create_supabase_client(settings: Settings) -> Optional[Client]:
    """
    Build the service-role Supabase client.

    Returns None when SUPABASE_URL / SUPABASE_SERVICE_ROLE_KEY are missing so
    the app still starts and database endpoints answer "not configured".
    """
    if not settings.database_configured:
        logger.warning("[DB] SUPABASE_URL or SUPABASE_SERVICE_ROLE_KEY not configured")
        return None
    return create_client(settings.supabase_url, settings.supabase_service_key)


class UserStore:
    def __init__(self, client: Client):
        self._client = client

    def get_user(self, user_id: str) -> UserBillingRecord:
        """Fetch a user by primary key. Raises NotFound when absent."""
        user = self.get_user_or_none(user_id)
        if user is None:
            raise NotFound("User not found in users table. User may need to complete signup process.")
        return user

    def get_user_or_none(self, user_id: str) -> Optional[UserBillingRecord]:
        try:
            result = (
                self._client.table(USERS_TABLE)
                .select(USER_COLUMNS)
                .eq("id", user_id)
                .limit(1)
                .execute()
            )
        except (APIError, httpx.HTTPError) as e:
            logger.error(f"[DB] Failed to fetch user_id={user_id}: {str(e)}")
            raise DatabaseError("Failed to fetch user") from e

        if not result.data:
            return None
        return UserBillingRecord.from_row(result.data[0])

    def find_by_customer_id(self, customer_id: str) -> Optional[UserBillingRecord]:
        """Fetch the user linked to a Stripe customer, or None"""
        try:
            result = (
                self._client.table(USERS_TABLE)
                .select(USER_COLUMNS)
                .eq("stripe_customer_id", customer_id)
                .limit(1)
                .execute()
            )
        except (APIError, httpx.HTTPError) as e:
            logger.error(f"[DB] Failed to fetch user for customer_id={customer_id}: {str(e)}")
            raise DatabaseError("Failed to fetch user") from e

        if not result.data:
            return None
        return UserBillingRecord.from_row(result.data[0])

    def update_user(self, user_id: str, fields: Dict[str, Any]) -> None:
        """Write billing columns for one user; updated_at is always refreshed"""
        update_data = dict(fields)
        update_data["updated_at"] = datetime.now(timezone.utc).isoformat()

        try:
            result = (
                self._client.table(USERS_TABLE)
                .update(update_data)
                .eq("id", user_id)
                .execute()
            )
        except (APIError, httpx.HTTPError) as e:
            logger.error(f"[DB] Failed to update user_id={user_id}: {str(e)}")
            raise DatabaseError("Failed to update subscription status") from e

        if not result.data:
            # PostgREST returns the updated rows; nothing back means no row matched
            logger.error(f"[DB] Update matched no rows: user_id={user_id}")
            raise DatabaseError("Failed to update subscription status")

        logger.info(f"[DB] Updated user_id={user_id} fields={sorted(fields)}")
