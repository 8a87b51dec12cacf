"""
Supabase database client and operations
"""
import asyncio
import time
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Set

import httpx
from loguru import logger
from supabase import Client, create_client
from tenacity import retry, stop_after_attempt, wait_exponential, retry_if_exception_type

from config import Settings, get_settings

# Per-mode detail tables holding one row per processed prospect
RESULT_TABLES = {
    "enrich": "prospect_results",
    "verify": "verification_results",
    "linkedin": "linkedin_results",
}

HISTORY_TABLE = "history"
SYNC_TABLE = "api_sync_results"
PROFILES_TABLE = "profiles"


def escape_like(value: str) -> str:
    """Escape LIKE wildcards so ilike behaves as a case-insensitive equality"""
    return (value or "").strip().replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


class CircuitOpenError(Exception):
    """Raised while the circuit breaker refuses calls"""
    pass


class CircuitBreaker:
    """Simple circuit breaker to prevent cascading failures"""

    def __init__(self, failure_threshold: int = 5, recovery_timeout: int = 60):
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.failure_count = 0
        self.last_failure_time = 0
        self.state = "closed"  # closed, open, half-open

    def _should_attempt_reset(self) -> bool:
        """Check if we should attempt to reset the circuit breaker"""
        return (self.state == "open" and
                time.time() - self.last_failure_time >= self.recovery_timeout)

    async def call(self, func, *args, **kwargs):
        """Execute function with circuit breaker protection"""
        if self.state == "open":
            if self._should_attempt_reset():
                self.state = "half-open"
                logger.warning("Circuit breaker transitioning to half-open state")
            else:
                raise CircuitOpenError("Circuit breaker is open - database writes temporarily disabled")

        try:
            result = await func(*args, **kwargs)
            if self.state == "half-open":
                self.state = "closed"
                logger.info("Circuit breaker reset to closed state")
            self.failure_count = 0
            return result
        except Exception:
            self.failure_count += 1
            self.last_failure_time = time.time()

            if self.failure_count >= self.failure_threshold:
                self.state = "open"
                logger.error(f"Circuit breaker opened after {self.failure_count} failures")

            raise


class DatabaseClient:
    """Supabase client for history, per-mode results, sync archive and profiles"""

    def __init__(self, settings: Optional[Settings] = None, client: Optional[Client] = None):
        self.settings = settings or get_settings()
        self._client: Optional[Client] = client
        self._connection_lock = asyncio.Lock()

        self._write_circuit_breaker = CircuitBreaker(failure_threshold=3, recovery_timeout=30)

    async def get_client(self) -> Client:
        """Get or create the Supabase client"""
        if self._client is None:
            async with self._connection_lock:
                if self._client is None:
                    try:
                        self._client = create_client(
                            supabase_url=self.settings.supabase_url,
                            supabase_key=self.settings.supabase_anon_key,
                        )
                        logger.info("Supabase client initialized successfully")
                    except Exception as e:
                        logger.error(f"Failed to initialize Supabase client: {e}")
                        raise
        return self._client

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=10),
        retry=retry_if_exception_type(httpx.TransportError),
        reraise=True
    )
    async def _write(self, func, *args) -> Any:
        """Run a write through the circuit breaker, retrying transport hiccups"""
        return await self._write_circuit_breaker.call(func, *args)

    async def _execute(self, query) -> List[Dict[str, Any]]:
        response = await asyncio.to_thread(query.execute)
        return response.data or []

    # Cache lookups

    async def find_cached_results(
        self,
        mode: str,
        name: str = "",
        company: str = "",
        email: str = "",
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        """
        Find stored per-row results for a lookup key, oldest first

        Args:
            mode: Feature mode selecting the detail table
            name: Prospect name (enrich/linkedin)
            company: Prospect company (enrich/linkedin)
            email: Email address (verify)
            limit: Maximum number of records to return

        Returns:
            Raw records ordered by created_at ascending
        """
        try:
            client = await self.get_client()
            query = client.table(RESULT_TABLES[mode]).select("*")

            if mode == "verify":
                query = query.ilike("email", escape_like(email))
            else:
                query = query.ilike("name", escape_like(name)).ilike("company", escape_like(company))

            query = query.order("created_at", desc=False).limit(limit or self.settings.cache_lookup_limit)
            return await self._execute(query)

        except Exception as e:
            logger.error(f"Cache lookup failed for {mode} ({name or email}): {e}")
            raise

    async def get_history_meta(self, history_id: str) -> Optional[Dict[str, Any]]:
        """Fetch the kind and data stub of a history row"""
        client = await self.get_client()
        rows = await self._execute(
            client.table(HISTORY_TABLE).select("type, data").eq("id", history_id).limit(1)
        )
        return rows[0] if rows else None

    async def has_sync_record(
        self, mode: str, name: str = "", company: str = "", email: str = ""
    ) -> bool:
        """Check whether any user ever synced a result for this lookup key"""
        rows = await self.find_sync_results_for_inputs(mode, name, company, email, limit=1)
        return bool(rows)

    # History

    async def insert_history(self, record: Dict[str, Any]) -> Dict[str, Any]:
        """Insert a history row and return it with its store-assigned id"""
        async def _insert(payload):
            client = await self.get_client()
            return await self._execute(client.table(HISTORY_TABLE).insert(payload))

        rows = await self._write(_insert, record)
        if not rows:
            raise RuntimeError("History insert returned no row")
        logger.debug(f"Saved history row {rows[0].get('id')}")
        return rows[0]

    async def insert_results(self, mode: str, records: List[Dict[str, Any]]) -> int:
        """Insert per-row results into the mode's detail table"""
        if not records:
            return 0

        async def _insert(payload):
            client = await self.get_client()
            return await self._execute(client.table(RESULT_TABLES[mode]).insert(payload))

        await self._write(_insert, records)
        logger.debug(f"Saved {len(records)} rows to {RESULT_TABLES[mode]}")
        return len(records)

    async def fetch_history(self, user_id: str, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        """Most recent history rows of a user"""
        try:
            client = await self.get_client()
            query = (
                client.table(HISTORY_TABLE)
                .select("*")
                .eq("user_id", user_id)
                .order("created_at", desc=True)
                .limit(limit or self.settings.history_fetch_limit)
            )
            return await self._execute(query)
        except Exception as e:
            logger.error(f"Failed to fetch history for user {user_id}: {e}")
            raise

    async def fetch_synced_history_ids(self, user_id: str) -> Set[str]:
        """Ids of history rows that have archived webhook results"""
        client = await self.get_client()
        rows = await self._execute(
            client.table(SYNC_TABLE).select("history_id").eq("user_id", user_id)
        )
        return {row["history_id"] for row in rows if row.get("history_id")}

    async def fetch_results_by_history(self, mode: str, history_id: str) -> List[Dict[str, Any]]:
        """Detail rows written for one history entry"""
        client = await self.get_client()
        return await self._execute(
            client.table(RESULT_TABLES[mode]).select("*").eq("history_id", history_id)
        )

    async def mark_history_synced(self, history_id: str) -> bool:
        """
        Flag the data stub of a history row as synced

        Returns:
            True if the row was found and updated
        """
        client = await self.get_client()
        rows = await self._execute(
            client.table(HISTORY_TABLE).select("data").eq("id", history_id).limit(1)
        )
        data = rows[0].get("data") if rows else None
        if not data or not isinstance(data, list):
            logger.warning(f"Could not update sync status: data stub missing for {history_id}")
            return False

        new_data = [dict(data[0], synced=True)] + list(data[1:])

        async def _update(payload):
            return await self._execute(
                client.table(HISTORY_TABLE).update({"data": payload}).eq("id", history_id)
            )

        await self._write(_update, new_data)
        logger.info(f"Updated sync status for history {history_id}")
        return True

    # Webhook sync archive

    async def insert_sync_results(self, records: List[Dict[str, Any]]) -> int:
        if not records:
            return 0

        async def _insert(payload):
            client = await self.get_client()
            return await self._execute(client.table(SYNC_TABLE).insert(payload))

        await self._write(_insert, records)
        logger.debug(f"Archived {len(records)} webhook results")
        return len(records)

    async def fetch_sync_results_by_history(self, history_id: str) -> List[Dict[str, Any]]:
        client = await self.get_client()
        return await self._execute(
            client.table(SYNC_TABLE).select("*").eq("history_id", history_id)
        )

    async def find_sync_results_for_inputs(
        self,
        mode: str,
        name: str = "",
        company: str = "",
        email: str = "",
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        """Archived webhook results matching one lookup key, across all users"""
        client = await self.get_client()
        query = client.table(SYNC_TABLE).select("*")
        if mode == "verify":
            query = query.ilike("email_used", escape_like(email))
        else:
            query = query.ilike("prospect_name", escape_like(name)).ilike(
                "prospect_company", escape_like(company)
            )
        if limit:
            query = query.limit(limit)
        return await self._execute(query)

    async def search_sync_results(
        self,
        mode: str,
        names: Iterable[str] = (),
        companies: Iterable[str] = (),
        emails: Iterable[str] = (),
    ) -> List[Dict[str, Any]]:
        """Archived webhook results matching any of a batch's rows"""
        client = await self.get_client()
        query = client.table(SYNC_TABLE).select("*")
        if mode == "verify":
            query = query.in_("email_used", list(emails))
        else:
            query = query.in_("prospect_name", list(names)).in_("prospect_company", list(companies))
        return await self._execute(query)

    # Profiles

    async def upsert_profile(self, user_id: str, email: str, full_name: Optional[str] = None) -> None:
        record = {
            "id": user_id,
            "email": email,
            "updated_at": datetime.now(timezone.utc).isoformat(),
        }
        if full_name:
            record["full_name"] = full_name

        async def _upsert(payload):
            client = await self.get_client()
            return await self._execute(client.table(PROFILES_TABLE).upsert(payload))

        await self._write(_upsert, record)

    async def close(self):
        """Close database connections"""
        if self._client:
            # Supabase client doesn't have explicit close method, but we can clear the reference
            self._client = None
            logger.info("Database client closed")
