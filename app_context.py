"""
Application context: the state of one console session and the workflows that change it
"""
import asyncio
from typing import Any, Dict, List, Optional, Tuple, Union

from loguru import logger

from auth_service import AuthService, UserSession
from config import Settings, get_settings
from database import DatabaseClient
from getprospect_client import GetProspectClient
from history_manager import HistoryManager
from models import (
    FEATURE_MODES,
    ColumnMapping,
    HistoryEntry,
    LoadedSession,
    ProspectRow,
    SingleInputs,
    StatusCount,
)
from perplexity_client import PerplexityClient
from row_processor import RowProcessor, RowUpdateCallback, SingleLookup
from spreadsheet import (
    apply_mapping,
    build_rows,
    export_json,
    export_records,
    export_xlsx,
    read_spreadsheet,
    resolve_mapping,
    status_counts,
    suggest_mapping_heuristic,
)
from sync_service import SyncResult, SyncService, WebhookClient, single_export_record


class BusyError(Exception):
    """A batch is already running in this context"""
    pass


class AppContext:
    """Owns clients, session, feature mode, history and the current working set"""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        db_client: Optional[DatabaseClient] = None,
        getprospect_client: Optional[GetProspectClient] = None,
        perplexity_client: Optional[PerplexityClient] = None,
        webhook_client: Optional[WebhookClient] = None,
    ):
        self.settings = settings or get_settings()
        self.db_client = db_client or DatabaseClient(self.settings)
        self.getprospect_client = getprospect_client or GetProspectClient(self.settings)
        self.perplexity_client = perplexity_client or PerplexityClient(self.settings)
        self.webhook_client = webhook_client or WebhookClient(self.settings)

        self.processor = RowProcessor(
            self.getprospect_client, self.perplexity_client, self.db_client, self.settings
        )
        self.history = HistoryManager(self.db_client, self.settings)
        self.sync_service = SyncService(self.webhook_client, self.db_client, self.history)
        self.auth = AuthService(self.db_client)

        self.session: Optional[UserSession] = None
        self.mode: str = "enrich"
        self._lock = asyncio.Lock()
        self._reset_working_set()

    def _reset_working_set(self) -> None:
        self.rows: List[ProspectRow] = []
        self.headers: List[str] = []
        self.mapping: Optional[ColumnMapping] = None
        self.source_label: Optional[str] = None
        self.current_history_id: Optional[str] = None
        self.single_inputs: Optional[SingleInputs] = None
        self.single_result: Optional[SingleLookup] = None

    @property
    def user_id(self) -> Optional[str]:
        return self.session.user_id if self.session else None

    @property
    def is_processing(self) -> bool:
        return self._lock.locked()

    # Session

    async def on_auth_state_change(self, session: Optional[UserSession]) -> None:
        """Load the user's history on sign-in, drop all state on sign-out"""
        self.session = session
        if session is None:
            self.history.clear()
            self._reset_working_set()
            logger.info("Session cleared")
            return

        await self.history.fetch_history(session.user_id)
        logger.info(f"Session initialized for {session.email or session.user_id}")

    async def sign_in(self, email: str, password: str) -> UserSession:
        session = await self.auth.sign_in(email, password)
        await self.on_auth_state_change(session)
        return session

    async def sign_up(self, email: str, password: str, full_name: Optional[str] = None) -> Optional[UserSession]:
        session = await self.auth.sign_up(email, password, full_name)
        if session is not None:
            await self.on_auth_state_change(session)
        return session

    async def sign_out(self) -> None:
        await self.auth.sign_out()
        await self.on_auth_state_change(None)

    def switch_mode(self, mode: str) -> None:
        """Change feature mode; the working set is cleared"""
        if mode not in FEATURE_MODES:
            raise ValueError(f"Unknown mode: {mode}")
        if mode != self.mode:
            logger.info(f"Switching mode {self.mode} -> {mode}")
        self.mode = mode
        self._reset_working_set()

    # Bulk workflow

    async def import_file(self, filename: str, content: bytes) -> ColumnMapping:
        """
        Load a spreadsheet as the working set and guess its column mapping

        The LLM suggestion is used when it resolves to real headers, the
        keyword heuristic otherwise.

        Raises:
            SpreadsheetImportError: If the file is unreadable or empty
        """
        headers, records = read_spreadsheet(filename, content)

        suggested = await self.perplexity_client.suggest_mappings(headers)
        mapping = resolve_mapping(suggested, headers, self.mode)
        if not mapping.name_header and not mapping.company_header:
            mapping = resolve_mapping(suggest_mapping_heuristic(headers), headers, self.mode)

        self._reset_working_set()
        self.headers = headers
        self.mapping = mapping
        self.source_label = filename
        self.rows = build_rows(records, mapping, self.mode)

        logger.info(
            f"Imported {filename}: name={mapping.name_header!r} company={mapping.company_header!r} "
            f"email={mapping.email_header!r}"
        )
        return mapping

    def update_mapping(self, mapping: ColumnMapping) -> List[ProspectRow]:
        """Apply a user-edited mapping to every row"""
        self.mapping = mapping
        self.rows = [apply_mapping(r, mapping, self.mode) for r in self.rows]
        return self.rows

    async def run_batch(self, on_update: Optional[RowUpdateCallback] = None) -> HistoryEntry:
        """
        Process the working set and record it in history

        Raises:
            BusyError: If another batch is running
            ValueError: If there are no rows
        """
        if not self.rows:
            raise ValueError("No rows to process.")
        if self._lock.locked():
            raise BusyError("A batch is already running.")

        async with self._lock:
            self.rows = await self.processor.process_batch(
                self.mode, self.rows, self.mapping, self.user_id, on_update
            )
            entry = await self.history.finalize_batch(
                self.mode, self.rows, self.mapping, self.source_label, self.headers, self.user_id
            )
        self.current_history_id = entry.id
        return entry

    async def retry_failed(self, on_update: Optional[RowUpdateCallback] = None) -> Tuple[List[int], Optional[HistoryEntry]]:
        """
        Re-run failed rows of the working set

        Returns:
            (retried indices, retry history entry or None when nothing was retried)
        """
        if self._lock.locked():
            raise BusyError("A batch is already running.")

        async with self._lock:
            self.rows, indices = await self.processor.retry_failed(
                self.mode, self.rows, self.user_id, on_update
            )
            if not indices:
                return [], None
            entry = await self.history.record_retry(
                self.mode, self.rows, self.mapping, self.source_label, len(indices), self.headers, self.user_id
            )
        self.current_history_id = entry.id
        return indices, entry

    # Single workflow

    async def run_single(
        self, name: str = "", company: str = "", email: str = "", retry: bool = False
    ) -> SingleLookup:
        """
        Look up one manually entered record and record it in history

        Raises:
            BusyError: If a batch or another lookup is running
            ValueError: If the inputs required by the mode are missing
        """
        if self._lock.locked():
            raise BusyError("A batch is already running.")

        async with self._lock:
            lookup = await self.processor.process_single(
                self.mode, name, company, email, self.user_id, use_cache=not retry
            )
            entry = await self.history.record_single(self.mode, lookup, self.user_id, retry=retry)

        self.single_inputs = SingleInputs(name=name.strip(), company=company.strip(), email=email.strip())
        self.single_result = lookup
        self.current_history_id = entry.id
        return lookup

    # History

    async def load_history(self, entry_id: str) -> LoadedSession:
        """
        Restore the working set from a history entry

        Raises:
            KeyError: If the entry is not in the loaded history
            HistoryLoadError: If its detail rows cannot be read
        """
        entry = self.history.find_entry(entry_id)
        if entry is None:
            raise KeyError(entry_id)

        loaded = await self.history.load_session(entry)
        self.switch_mode(loaded.feature)
        self.current_history_id = loaded.entry_id

        if loaded.kind == "bulk":
            self.rows = loaded.rows
            self.headers = loaded.headers
            self.mapping = loaded.mapping
            self.source_label = loaded.source_label
        else:
            self.single_inputs = loaded.single_inputs
            self.single_result = SingleLookup(
                row=loaded.rows[0], cached=True, message=loaded.message
            ) if loaded.rows else None
        return loaded

    # Output

    def stats(self) -> List[StatusCount]:
        return status_counts(self.mode, self.rows)

    def export(self, fmt: str = "xlsx") -> Union[bytes, str]:
        if fmt == "json":
            return export_json(self.rows)
        if fmt == "xlsx":
            return export_xlsx(self.rows)
        raise ValueError(f"Unsupported export format: {fmt}")

    def _sync_records(self) -> List[Dict[str, Any]]:
        if self.rows:
            return export_records(self.rows)
        if self.single_result is not None:
            inputs = self.single_inputs or SingleInputs()
            return [single_export_record(self.mode, self.single_result.row, inputs, self.single_result.message)]
        return []

    async def sync_to_webhook(self) -> SyncResult:
        """
        Send the current results to the webhook

        Raises:
            ValueError: If there is nothing to send
            WebhookError: If the webhook call fails
        """
        records = self._sync_records()
        if not records:
            raise ValueError("No results to sync.")
        return await self.sync_service.sync(self.mode, self.current_history_id, records, self.user_id)

    async def get_api_results(self) -> List[Dict[str, Any]]:
        if self.rows:
            return await self.sync_service.get_api_results(self.mode, self.current_history_id, rows=self.rows)
        return await self.sync_service.get_api_results(
            self.mode, self.current_history_id, single_inputs=self.single_inputs or SingleInputs()
        )

    async def close(self):
        await self.getprospect_client.close()
        await self.perplexity_client.close()
        await self.webhook_client.close()
        await self.db_client.close()
