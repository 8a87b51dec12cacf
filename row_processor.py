"""
Row processing: cache lookup, remote call and status assignment for each prospect row
"""
import asyncio
from typing import Any, Callable, Dict, List, Optional, Tuple

from loguru import logger
from pydantic import BaseModel

from config import Settings, get_settings
from getprospect_client import NO_EMAIL_FOUND
from models import (
    CACHE_PREFERRED_STATUSES,
    RETRYABLE_STATUSES,
    CacheProvenance,
    ColumnMapping,
    EnrichResult,
    LinkedinResult,
    ProspectRow,
    VerifyResult,
    in_progress_status,
    normalize_status,
)
from perplexity_client import NO_PROFILE_FOUND
from spreadsheet import apply_mapping

MISSING_DATA = "Missing data"
ALREADY_PROCESSED = "Already Processed"

RowUpdateCallback = Callable[[List[ProspectRow], int], None]


class CachedLookup(BaseModel):
    """A stored result reused instead of a remote call"""
    record: Dict[str, Any]
    cached_via: Optional[str] = None
    globally_synced: bool = False


class SingleLookup(BaseModel):
    """Outcome of a single-entry lookup"""
    row: ProspectRow
    cached: bool = False
    message: Optional[str] = None


def pick_cached_record(records: List[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """
    Choose which stored record answers a lookup

    Records are expected oldest first. The oldest record whose status is in
    CACHE_PREFERRED_STATUSES wins; otherwise the most recent record is used.
    """
    if not records:
        return None
    preferred = next((r for r in records if r.get("status") in CACHE_PREFERRED_STATUSES), None)
    return preferred or records[-1]


def _history_stub(data: Any) -> Dict[str, Any]:
    if isinstance(data, list):
        return data[0] if data and isinstance(data[0], dict) else {}
    return data if isinstance(data, dict) else {}


class RowProcessor:
    """Resolves rows one at a time against the store cache and the remote services"""

    def __init__(
        self,
        getprospect_client,
        perplexity_client,
        db_client=None,
        settings: Optional[Settings] = None,
    ):
        self.settings = settings or get_settings()
        self.getprospect_client = getprospect_client
        self.perplexity_client = perplexity_client
        self.db_client = db_client

    async def check_existing_result(
        self, mode: str, row: ProspectRow, user_id: Optional[str]
    ) -> Optional[CachedLookup]:
        """
        Look up a previously stored result for the row's key

        The cache is only consulted for a signed-in user. Lookup failures are
        logged and treated as a miss.
        """
        if not user_id or self.db_client is None:
            return None

        name, company, email = row.name.strip(), row.company.strip(), (row.email or "").strip()
        if mode == "verify" and not email:
            return None

        try:
            records = await self.db_client.find_cached_results(
                mode, name=name, company=company, email=email
            )
            record = pick_cached_record(records)
            if record is None:
                return None

            cached_via = None
            if record.get("history_id"):
                meta = await self.db_client.get_history_meta(record["history_id"])
                if meta:
                    cached_via = _history_stub(meta.get("data")).get("cachedType") or meta.get("type")

            globally_synced = await self.db_client.has_sync_record(
                mode, name=name, company=company, email=email
            )

            logger.debug(f"Cache hit for {mode} lookup ({name or email}): {record.get('status')}")
            return CachedLookup(record=record, cached_via=cached_via, globally_synced=globally_synced)

        except Exception as e:
            logger.error(f"Cache lookup failed for {name or email}: {e}")
            return None

    def _apply_cached(self, mode: str, row: ProspectRow, cached: CachedLookup) -> ProspectRow:
        record = cached.record
        status = normalize_status(mode, record.get("status"))
        update: Dict[str, Any] = {
            "status": status,
            "error": None,
            "synced": cached.globally_synced,
            "cache": CacheProvenance(
                cached_at=record.get("created_at"),
                cached_via=cached.cached_via,
                globally_synced=cached.globally_synced,
            ),
        }

        if mode == "enrich":
            update["email"] = record.get("email")
            update["result"] = EnrichResult(email=record.get("email"))
        elif mode == "linkedin":
            update["linkedin_url"] = record.get("linkedin_url")
            update["result"] = LinkedinResult(url=record.get("linkedin_url"))
        else:
            raw = record.get("result") if isinstance(record.get("result"), dict) else {}
            update["result"] = VerifyResult(email=row.email, status=status, raw_data=raw)

        return row.model_copy(update=update)

    async def _call_remote(self, mode: str, row: ProspectRow) -> ProspectRow:
        if mode == "enrich":
            result = await self.getprospect_client.find_email(row.name, row.company)
            if result.success:
                status = "completed"
            else:
                status = "not_found" if result.message == NO_EMAIL_FOUND else "failed"
            return row.model_copy(update={
                "email": result.email,
                "status": status,
                "error": None if result.success else result.message,
                "result": EnrichResult(email=result.email),
            })

        if mode == "linkedin":
            result = await self.perplexity_client.find_linkedin_url(row.name, row.company)
            if result.success:
                status = "found"
            else:
                status = "not_found" if result.message == NO_PROFILE_FOUND else "failed"
            return row.model_copy(update={
                "linkedin_url": result.url,
                "status": status,
                "error": None if result.success else result.message,
                "result": LinkedinResult(url=result.url),
            })

        result = await self.getprospect_client.verify_email(row.email)
        status = result.status if result.success else "failed"
        return row.model_copy(update={
            "status": status,
            "error": None if result.success else result.message,
            "result": VerifyResult(email=row.email, status=status, raw_data=result.raw_data or {}),
        })

    async def process_row(
        self,
        mode: str,
        row: ProspectRow,
        mapping: Optional[ColumnMapping] = None,
        user_id: Optional[str] = None,
        use_cache: bool = True,
    ) -> ProspectRow:
        """
        Resolve one row

        Args:
            mode: Feature mode (enrich, verify, linkedin)
            row: Row to resolve
            mapping: Column mapping used to re-derive the row's fields from its source record
            user_id: Signed-in user; enables the cache lookup
            use_cache: False skips the cache lookup (user-triggered retries)

        Returns:
            A new row carrying the outcome
        """
        row = apply_mapping(row, mapping, mode)

        if mode != "verify" and not row.name and not row.company and not row.email:
            return row.model_copy(update={"status": "failed", "error": MISSING_DATA})

        if mode == "verify" and not row.email:
            return row.model_copy(update={"status": "failed", "error": NO_EMAIL_FOUND})

        if use_cache:
            cached = await self.check_existing_result(mode, row, user_id)
            if cached is not None:
                return self._apply_cached(mode, row, cached)

        return await self._call_remote(mode, row)

    async def _resolve_at(
        self,
        mode: str,
        rows: List[ProspectRow],
        index: int,
        user_id: Optional[str],
        use_cache: bool,
        on_update: Optional[RowUpdateCallback],
    ) -> None:
        rows[index] = rows[index].model_copy(update={"status": in_progress_status(mode)})
        if on_update:
            on_update(rows, index)

        try:
            rows[index] = await self.process_row(mode, rows[index], None, user_id, use_cache)
        except Exception as e:
            logger.error(f"Row {rows[index].id} failed: {e}")
            rows[index] = rows[index].model_copy(update={"status": "failed", "error": str(e)})

        logger.debug(f"Row {rows[index].id} -> {rows[index].status}")
        if on_update:
            on_update(rows, index)

    async def process_batch(
        self,
        mode: str,
        rows: List[ProspectRow],
        mapping: Optional[ColumnMapping],
        user_id: Optional[str] = None,
        on_update: Optional[RowUpdateCallback] = None,
    ) -> List[ProspectRow]:
        """
        Resolve every row sequentially, pausing between rows

        A failing row never aborts the batch. on_update is invoked with the
        working list and the index each time a row changes.
        """
        working = [apply_mapping(r, mapping, mode).model_copy(update={"status": "pending"}) for r in rows]
        logger.info(f"Processing {len(working)} rows in {mode} mode")

        for i in range(len(working)):
            await self._resolve_at(mode, working, i, user_id, True, on_update)
            if i < len(working) - 1 and self.settings.row_delay_ms:
                await asyncio.sleep(self.settings.row_delay_seconds)

        done = sum(1 for r in working if r.status not in ("failed", "not_found"))
        logger.info(f"Batch complete: {done}/{len(working)} rows resolved")
        return working

    async def retry_failed(
        self,
        mode: str,
        rows: List[ProspectRow],
        user_id: Optional[str] = None,
        on_update: Optional[RowUpdateCallback] = None,
    ) -> Tuple[List[ProspectRow], List[int]]:
        """
        Re-run rows whose status is failed, undeliverable or not_found

        The cache is bypassed so the remote service is asked again.

        Returns:
            (updated rows, indices that were retried)
        """
        working = list(rows)
        indices = [i for i, r in enumerate(working) if r.status in RETRYABLE_STATUSES]
        if not indices:
            return working, []

        logger.info(f"Retrying {len(indices)} rows in {mode} mode")
        for n, i in enumerate(indices):
            await self._resolve_at(mode, working, i, user_id, False, on_update)
            if n < len(indices) - 1 and self.settings.row_delay_ms:
                await asyncio.sleep(self.settings.row_delay_seconds)

        return working, indices

    async def process_single(
        self,
        mode: str,
        name: str = "",
        company: str = "",
        email: str = "",
        user_id: Optional[str] = None,
        use_cache: bool = True,
    ) -> SingleLookup:
        """
        Resolve a single manually entered record

        Raises:
            ValueError: If the inputs required by the mode are missing
        """
        name, company, email = (name or "").strip(), (company or "").strip(), (email or "").strip()
        if mode == "verify":
            if not email:
                raise ValueError("Email is required.")
        elif not name or not company:
            raise ValueError("Name and Company/Domain are required.")

        row = ProspectRow(
            id="single",
            name=name,
            company=company,
            email=email or None,
            status=in_progress_status(mode),
        )

        if use_cache:
            cached = await self.check_existing_result(mode, row, user_id)
            if cached is not None:
                return SingleLookup(row=self._apply_cached(mode, row, cached), cached=True, message=ALREADY_PROCESSED)

        row = await self._call_remote(mode, row)
        return SingleLookup(row=row, cached=False, message=row.error)
