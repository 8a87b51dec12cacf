"""
History Manager for the Lead Enrichment Console
Turns finished runs into history entries, persists them, and rebuilds sessions from them
"""
import time
import uuid
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Set

from loguru import logger

from config import Settings, get_settings
from models import (
    FEATURE_MODES,
    CacheProvenance,
    ColumnMapping,
    EnrichResult,
    HistoryBuckets,
    HistoryEntry,
    LinkedinResult,
    LoadedSession,
    ProspectRow,
    SingleInputs,
    VerifyResult,
    normalize_status,
)
from row_processor import ALREADY_PROCESSED, SingleLookup
from spreadsheet import DEFAULT_HEADERS

RETRY_PREFIX = "Retry: "
SINGLE_SEPARATOR = " @ "


class HistoryLoadError(Exception):
    """Detail rows of a history entry could not be loaded"""
    pass


def classify_history_record(record: Dict[str, Any]) -> str:
    """
    Decide which feature bucket a stored history row belongs to

    Precedence:
    1. An explicit "feature" column of enrich, verify or linkedin.
    2. Legacy bulk rows: linkedin when the first stored row carries a
       LinkedIn URL, otherwise enrich.
    3. Legacy single rows: verify when the input contains "@" and no
       spaces, linkedin when the result mentions linkedin.com, otherwise enrich.
    """
    feature = record.get("feature")
    if feature in FEATURE_MODES:
        return feature

    data = record.get("data")
    first = data[0] if isinstance(data, list) and data and isinstance(data[0], dict) else {}

    if record.get("type") == "bulk":
        return "linkedin" if first.get("linkedinUrl") else "enrich"

    text_input = str(record.get("input") or "")
    result = str(record.get("result") or "")
    if "@" in text_input and " " not in text_input:
        return "verify"
    if "linkedin.com" in result:
        return "linkedin"
    return "enrich"


def _mask_email(value: str, keep_min: int, mask: str) -> str:
    local, _, domain = value.partition("@")
    if len(local) > keep_min:
        return f"{local[:2]}{mask}@{domain}"
    return value


def format_history_input(entry: HistoryEntry) -> str:
    """Display label of a history entry input"""
    if entry.kind == "bulk":
        return entry.input
    if SINGLE_SEPARATOR in entry.input:
        return entry.input.split(SINGLE_SEPARATOR)[0].strip()
    if "@" in entry.input and " " not in entry.input:
        return _mask_email(entry.input, 3, "***")
    return entry.input


def format_history_result(result: str) -> str:
    """Display label of a history entry result; emails are masked"""
    if result and "@" in result and " " not in result:
        return _mask_email(result, 2, "**")
    return result


def _row_from_snapshot(data: Dict[str, Any], feature: str) -> ProspectRow:
    """Rebuild a row from an embedded snapshot in either key style"""
    status = normalize_status(feature, data.get("status"))
    cached_at = data.get("cachedAt") or data.get("cached_at")
    cached_via = data.get("cachedType") or data.get("cached_via")
    cache = data.get("cache")
    if isinstance(cache, dict):
        provenance = CacheProvenance(**cache)
    elif cached_at:
        provenance = CacheProvenance(cached_at=cached_at, cached_via=cached_via, globally_synced=bool(data.get("synced")))
    else:
        provenance = None

    return ProspectRow(
        id=str(data.get("id", "")),
        name=data.get("name") or "",
        company=data.get("company") or "",
        email=data.get("email"),
        linkedin_url=data.get("linkedinUrl") or data.get("linkedin_url"),
        status=status,
        error=data.get("error"),
        result=data.get("result") if isinstance(data.get("result"), dict) and data["result"].get("mode") else None,
        cache=provenance,
        synced=bool(data.get("synced")),
        original_data=data.get("originalData") or data.get("original_data") or {},
    )


def _is_row_snapshot(data: Any) -> bool:
    return isinstance(data, list) and bool(data) and isinstance(data[0], dict) and bool(data[0].get("name") or data[0].get("email"))


def _ms_from_record(record: Dict[str, Any]) -> int:
    if record.get("timestamp"):
        return int(record["timestamp"])
    created_at = record.get("created_at")
    if created_at:
        try:
            return int(datetime.fromisoformat(str(created_at).replace("Z", "+00:00")).timestamp() * 1000)
        except ValueError:
            logger.warning(f"Unparseable created_at on history row {record.get('id')}: {created_at}")
    return 0


class HistoryManager:
    """Builds, persists, deduplicates and reloads history entries"""

    def __init__(
        self,
        db_client=None,
        settings: Optional[Settings] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.settings = settings or get_settings()
        self.db_client = db_client
        self._clock = clock
        self.buckets = HistoryBuckets()

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    def _client_id(self, prefix: str) -> str:
        """Temporary id used until the store assigns one"""
        return f"{prefix}-{self._now_ms()}-{uuid.uuid4().hex[:9]}"

    def clear(self) -> None:
        self.buckets = HistoryBuckets()

    def is_duplicate(self, mode: str, entry: HistoryEntry) -> bool:
        """Same kind and input recorded within the dedup window"""
        return self._find_duplicate(mode, entry) is not None

    def _find_duplicate(self, mode: str, entry: HistoryEntry) -> Optional[HistoryEntry]:
        window = self.settings.dedup_window_ms
        return next(
            (
                e for e in self.buckets.for_mode(mode)
                if e.kind == entry.kind and e.input == entry.input and abs(e.timestamp - entry.timestamp) < window
            ),
            None,
        )

    def add_entry(self, mode: str, entry: HistoryEntry, dedupe: bool = True) -> bool:
        """
        Prepend an entry to the mode's list, capped at the history limit

        Returns:
            False if the entry was suppressed as a duplicate
        """
        if dedupe and self.is_duplicate(mode, entry):
            logger.debug(f"Suppressed duplicate {entry.kind} history entry for {entry.input}")
            return False
        entries = [entry] + self.buckets.for_mode(mode)
        self.buckets.set_mode(mode, entries[: self.settings.history_cap])
        return True

    # Persistence

    def _detail_records(self, mode: str, entry: HistoryEntry, history_id: str, user_id: str) -> List[Dict[str, Any]]:
        mapping = entry.mapping or ColumnMapping()
        records = []
        for row in entry.rows:
            name = row.name or row.original_data.get(mapping.name_header) or None
            company = row.company or row.original_data.get(mapping.company_header) or None
            cached_at = row.cache.cached_at if row.cache else None
            cached_via = row.cache.cached_via if row.cache else None
            synced = row.synced or bool(row.cache and row.cache.globally_synced)

            if mode == "verify":
                if not row.email:
                    continue
                raw = row.result.raw_data if isinstance(row.result, VerifyResult) else {}
                records.append({
                    "history_id": history_id,
                    "user_id": user_id,
                    "email": row.email,
                    "status": row.status,
                    "result": {
                        **raw,
                        "name": name,
                        "company": company,
                        "message": row.error,
                        "cached": row.cache is not None,
                        "cachedAt": cached_at,
                        "cachedType": cached_via,
                        "synced": synced,
                    },
                })
            elif mode == "linkedin":
                records.append({
                    "history_id": history_id,
                    "user_id": user_id,
                    "name": name,
                    "company": company,
                    "linkedin_url": row.linkedin_url,
                    "status": row.status,
                    "cached_at": cached_at,
                    "cached_type": cached_via,
                    "synced": synced,
                })
            else:
                records.append({
                    "history_id": history_id,
                    "user_id": user_id,
                    "name": name,
                    "company": company,
                    "email": row.email,
                    "status": row.status,
                    "cached_at": cached_at,
                    "cached_type": cached_via,
                    "synced": synced,
                })
        return records

    async def persist(self, mode: str, entry: HistoryEntry, user_id: Optional[str]) -> Optional[str]:
        """
        Write the history row and its per-mode detail rows

        Failures are logged and swallowed; the in-memory entry stays authoritative.

        Returns:
            The store-assigned id, None if nothing was persisted
        """
        if not user_id or self.db_client is None:
            return None

        stub = {
            "user_id": user_id,
            "hasCached": entry.has_cached,
            "cachedAt": entry.cached_at,
            "cachedType": entry.cached_via,
            "synced": entry.synced,
        }
        try:
            saved = await self.db_client.insert_history({
                "user_id": user_id,
                "type": entry.kind,
                "feature": mode,
                "input": entry.input,
                "result": entry.result,
                "status": entry.status,
                "timestamp": entry.timestamp,
                "data": [stub],
                "headers": entry.headers,
                "mapping": entry.mapping.to_store() if entry.mapping else None,
            })
        except Exception as e:
            logger.error(f"Failed to save history to Supabase: {e}")
            return None

        history_id = str(saved["id"])
        try:
            await self.db_client.insert_results(mode, self._detail_records(mode, entry, history_id, user_id))
        except Exception as e:
            logger.error(f"Failed to save {mode} results for history {history_id}: {e}")

        return history_id

    async def save(self, mode: str, entry: HistoryEntry, user_id: Optional[str], dedupe: bool = True) -> HistoryEntry:
        """
        Persist an entry and prepend it to the mode's history

        A duplicate (same kind and input inside the dedup window) is neither
        persisted nor added; the existing entry is returned instead.
        """
        if dedupe:
            existing = self._find_duplicate(mode, entry)
            if existing is not None:
                logger.info(f"Duplicate submit of {entry.input} ignored")
                return existing

        history_id = await self.persist(mode, entry, user_id)
        if history_id:
            entry = entry.model_copy(update={"id": history_id, "persisted": True})

        self.add_entry(mode, entry, dedupe=False)
        logger.info(f"Recorded {entry.kind} {mode} history entry {entry.id}")
        return entry

    # Entry builders

    async def finalize_batch(
        self,
        mode: str,
        rows: List[ProspectRow],
        mapping: Optional[ColumnMapping],
        source_label: Optional[str],
        headers: Optional[List[str]] = None,
        user_id: Optional[str] = None,
    ) -> HistoryEntry:
        """Record a finished bulk run"""
        cached_rows = [r for r in rows if r.cache is not None]
        entry = HistoryEntry(
            id=self._client_id("bulk"),
            kind="bulk",
            feature=mode,
            input=source_label or "Bulk Session",
            result=f"{len(rows)} Records processed",
            status="completed",
            timestamp=self._now_ms(),
            rows=list(rows),
            headers=list(headers or []),
            mapping=mapping.model_copy() if mapping else None,
            has_cached=bool(cached_rows),
            cached_at=cached_rows[0].cache.cached_at if cached_rows else None,
        )
        return await self.save(mode, entry, user_id)

    async def record_retry(
        self,
        mode: str,
        rows: List[ProspectRow],
        mapping: Optional[ColumnMapping],
        source_label: Optional[str],
        retried: int,
        headers: Optional[List[str]] = None,
        user_id: Optional[str] = None,
    ) -> HistoryEntry:
        """Record a retry pass as its own bulk entry"""
        entry = HistoryEntry(
            id=self._client_id("bulk-retry"),
            kind="bulk",
            feature=mode,
            input=f"{RETRY_PREFIX}{source_label or 'Bulk Session'}",
            result=f"{retried} Failed records retried",
            status="completed",
            timestamp=self._now_ms(),
            rows=list(rows),
            headers=list(headers or []),
            mapping=mapping.model_copy() if mapping else None,
        )
        return await self.save(mode, entry, user_id, dedupe=False)

    async def record_single(
        self,
        mode: str,
        lookup: SingleLookup,
        user_id: Optional[str] = None,
        retry: bool = False,
    ) -> HistoryEntry:
        """Record a single-entry lookup"""
        row = lookup.row
        if mode == "verify":
            label = row.email or ""
        else:
            label = f"{row.name}{SINGLE_SEPARATOR}{row.company}"
        if retry:
            label = f"{RETRY_PREFIX}{label}"

        if mode == "enrich":
            result = row.email or row.status
        elif mode == "linkedin":
            result = row.linkedin_url or row.status
        else:
            result = row.status

        provenance = row.cache
        entry = HistoryEntry(
            id=self._client_id("single"),
            kind="single",
            feature=mode,
            input=label,
            result=result,
            status=row.status,
            timestamp=self._now_ms(),
            rows=[row],
            has_cached=lookup.cached,
            cached_at=provenance.cached_at if provenance else None,
            cached_via=provenance.cached_via if provenance else None,
            synced=bool(provenance and provenance.globally_synced),
        )
        return await self.save(mode, entry, user_id, dedupe=not retry)

    def mark_synced(self, mode: str, history_id: str) -> None:
        entries = self.buckets.for_mode(mode)
        self.buckets.set_mode(mode, [
            e.model_copy(update={"synced": True}) if e.id == history_id else e for e in entries
        ])

    def find_entry(self, history_id: str) -> Optional[HistoryEntry]:
        for mode in FEATURE_MODES:
            for entry in self.buckets.for_mode(mode):
                if entry.id == history_id:
                    return entry
        return None

    # Loading

    def _rows_from_details(self, feature: str, results: List[Dict[str, Any]]) -> List[ProspectRow]:
        rows = []
        for r in results:
            if feature == "verify":
                original = r.get("result") or {}
                status = normalize_status("verify", r.get("status"))
                cached_at = original.get("cachedAt")
                rows.append(ProspectRow(
                    id=str(r.get("id", "")),
                    name=original.get("name") or "",
                    company=original.get("company") or "",
                    email=r.get("email"),
                    status=status,
                    error=original.get("message"),
                    result=VerifyResult(email=r.get("email"), status=status, raw_data=original),
                    cache=CacheProvenance(
                        cached_at=cached_at,
                        cached_via=original.get("cachedType"),
                        globally_synced=bool(original.get("synced")),
                    ) if original.get("cached") else None,
                    synced=bool(original.get("synced")),
                    original_data=dict(original),
                ))
                continue

            cached_at = r.get("cached_at")
            provenance = CacheProvenance(
                cached_at=cached_at, cached_via=r.get("cached_type"), globally_synced=bool(r.get("synced"))
            ) if cached_at else None

            if feature == "linkedin":
                rows.append(ProspectRow(
                    id=str(r.get("id", "")),
                    name=r.get("name") or "",
                    company=r.get("company") or "",
                    linkedin_url=r.get("linkedin_url"),
                    status=normalize_status("linkedin", r.get("status")),
                    result=LinkedinResult(url=r.get("linkedin_url")),
                    cache=provenance,
                    synced=bool(r.get("synced")),
                    original_data=dict(r),
                ))
            else:
                rows.append(ProspectRow(
                    id=str(r.get("id", "")),
                    name=r.get("name") or "",
                    company=r.get("company") or "",
                    email=r.get("email"),
                    status=normalize_status("enrich", r.get("status")),
                    result=EnrichResult(email=r.get("email")),
                    cache=provenance,
                    synced=bool(r.get("synced")),
                    original_data=dict(r),
                ))
        return rows

    async def _fetch_details(self, entry: HistoryEntry) -> List[Dict[str, Any]]:
        if self.db_client is None:
            raise HistoryLoadError("Failed to load history details.")
        try:
            return await self.db_client.fetch_results_by_history(entry.feature, entry.id)
        except Exception as e:
            logger.error(f"Failed to load details for history {entry.id}: {e}")
            raise HistoryLoadError("Failed to load history details.") from e

    async def load_session(self, entry: HistoryEntry) -> LoadedSession:
        """
        Rebuild the working state a history entry was produced from

        Bulk entries yield rows, headers and mapping; single entries yield the
        original input fields and the result row.

        Raises:
            HistoryLoadError: If a minimal entry's detail rows cannot be read
        """
        if entry.kind == "bulk":
            if entry.minimal or not entry.rows:
                results = await self._fetch_details(entry)
                rows = self._rows_from_details(entry.feature, results)
                headers = list(entry.headers) or list(DEFAULT_HEADERS)
            else:
                rows = [r.model_copy() for r in entry.rows]
                headers = list(entry.headers)

            return LoadedSession(
                entry_id=entry.id,
                kind="bulk",
                feature=entry.feature,
                source_label=entry.input,
                rows=rows,
                headers=headers,
                mapping=entry.mapping.model_copy() if entry.mapping else None,
            )

        label = entry.input[len(RETRY_PREFIX):] if entry.input.startswith(RETRY_PREFIX) else entry.input
        if entry.feature == "verify":
            inputs = SingleInputs(email=label)
        else:
            name, _, company = label.partition(SINGLE_SEPARATOR)
            inputs = SingleInputs(name=name, company=company)

        message = ALREADY_PROCESSED
        if entry.minimal or not entry.rows:
            results = await self._fetch_details(entry)
            rows = self._rows_from_details(entry.feature, results[:1])
            if entry.feature == "verify" and results and (results[0].get("result") or {}).get("message"):
                message = results[0]["result"]["message"]
            if not rows:
                rows = [self._row_from_entry_result(entry, inputs)]
        else:
            rows = [r.model_copy() for r in entry.rows[:1]]

        return LoadedSession(
            entry_id=entry.id,
            kind="single",
            feature=entry.feature,
            source_label=entry.input,
            rows=rows,
            single_inputs=inputs,
            message=message,
        )

    @staticmethod
    def _row_from_entry_result(entry: HistoryEntry, inputs: SingleInputs) -> ProspectRow:
        status = normalize_status(entry.feature, entry.status)
        return ProspectRow(
            id="single",
            name=inputs.name,
            company=inputs.company,
            email=(entry.result if entry.feature == "enrich" else inputs.email) or None,
            linkedin_url=entry.result if entry.feature == "linkedin" else None,
            status=status,
        )

    # Fetching

    def entry_from_record(self, record: Dict[str, Any], synced_ids: Set[str]) -> HistoryEntry:
        """Convert a stored history row into an entry"""
        feature = classify_history_record(record)
        data = record.get("data")
        stub = data[0] if isinstance(data, list) and data and isinstance(data[0], dict) else (data if isinstance(data, dict) else {})
        snapshot = _is_row_snapshot(data)
        rows = [_row_from_snapshot(d, feature) for d in data] if snapshot else []
        history_id = str(record.get("id"))
        kind = record.get("type") if record.get("type") in ("bulk", "single") else "bulk"

        return HistoryEntry(
            id=history_id,
            kind=kind,
            feature=feature,
            input=str(record.get("input") or ""),
            result=str(record.get("result") or ""),
            status=str(record.get("status") or "completed"),
            timestamp=_ms_from_record(record),
            rows=rows,
            headers=list(record.get("headers") or []),
            mapping=ColumnMapping.from_store(record.get("mapping")),
            has_cached=bool(stub.get("hasCached")),
            cached_at=stub.get("cachedAt"),
            cached_via=stub.get("cachedType"),
            synced=history_id in synced_ids or bool(stub.get("synced")),
            minimal=not snapshot,
            persisted=True,
        )

    async def fetch_history(self, user_id: str) -> HistoryBuckets:
        """
        Load a user's recent history into per-feature buckets

        Failures are logged and leave empty buckets.
        """
        buckets = HistoryBuckets()
        if self.db_client is None:
            self.buckets = buckets
            return buckets

        try:
            records = await self.db_client.fetch_history(user_id, self.settings.history_fetch_limit)
        except Exception as e:
            logger.error(f"Error fetching history: {e}")
            self.buckets = buckets
            return buckets

        try:
            synced_ids = await self.db_client.fetch_synced_history_ids(user_id)
        except Exception as e:
            logger.warning(f"Could not read sync records for {user_id}: {e}")
            synced_ids = set()

        for record in records:
            try:
                entry = self.entry_from_record(record, synced_ids)
            except Exception as e:
                logger.warning(f"Skipping unreadable history row {record.get('id')}: {e}")
                continue
            entries = buckets.for_mode(entry.feature)
            if len(entries) < self.settings.history_cap:
                entries.append(entry)

        logger.info(
            f"Loaded history for {user_id}: {len(buckets.enrich)} enrich, "
            f"{len(buckets.verify)} verify, {len(buckets.linkedin)} linkedin"
        )
        self.buckets = buckets
        return buckets
