"""
Webhook sync: post processed rows to an external endpoint and archive what comes back
"""
import re
from typing import Any, Dict, List, Optional

import httpx
from loguru import logger
from pydantic import BaseModel, Field

from config import Settings, get_settings
from models import ProspectRow, SingleInputs

ENRICHMENT_KEYS = ("custom_enrichment", "custom_enrichment_data")

# Internal columns hidden when archived results are shown back
INTERNAL_SYNC_COLUMNS = ("id", "user_id", "history_id", "feature", "created_at")

UUID_RE = re.compile(r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$", re.IGNORECASE)

# Archive column <- key of a flattened webhook item
ARCHIVE_FIELDS = {
    "name": "Name",
    "company": "Company",
    "status": "Status",
    "email_used": "email_used",
    "mx_present": "mx_present",
    "explanation": "explanation",
    "linkedin_url": "LinkedIn URL",
    "risk_signals": "risk_signals",
    "syntax_valid": "syntax_valid",
    "prospect_name": "Prospect Name",
    "enriched_email": "Enriched Email",
    "recommendation": "recommendation",
    "local_part_risk": "local_part_risk",
    "prospect_company": "Prospect Company",
    "final_confidence": "final_confidence",
    "disposable_domain": "disposable_domain",
    "possible_typo_domain": "possible_typo_domain",
}


class WebhookError(Exception):
    """The webhook rejected or never answered the sync request"""
    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class SyncResult(BaseModel):
    """Response of a webhook sync"""
    raw: bytes = b""
    content_type: str = "application/json"
    items: List[Dict[str, Any]] = Field(default_factory=list)
    archived: int = 0
    synced: bool = False


def _find_enrichment_key(item: Dict[str, Any]) -> Optional[str]:
    for key, value in item.items():
        if key in ENRICHMENT_KEYS:
            return key
        if isinstance(value, dict) and "checks" in value and "final_confidence" in value:
            return key
    return None


def _flatten_item(item: Any) -> Any:
    if not isinstance(item, dict):
        return item

    flat = dict(item)
    key = _find_enrichment_key(flat)
    if key is None or not flat.get(key):
        return flat

    enrichment = flat.pop(key)
    if not isinstance(enrichment, dict):
        return flat
    for k, v in enrichment.items():
        if k == "checks" and isinstance(v, dict):
            flat.update(v)
        else:
            flat[k] = v
    return flat


def flatten_api_payload(data: Any) -> Any:
    """
    Lift the enrichment object of each webhook item into the item itself

    The enrichment object is the one named custom_enrichment or
    custom_enrichment_data, or any object carrying both checks and
    final_confidence. Its checks mapping becomes top-level keys.
    """
    if data is None:
        return data
    if isinstance(data, list):
        return [_flatten_item(item) for item in data]
    return _flatten_item(data)


def strip_internal_columns(records: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    return [{k: v for k, v in r.items() if k not in INTERNAL_SYNC_COLUMNS} for r in records]


def single_export_record(mode: str, row: ProspectRow, inputs: SingleInputs, message: Optional[str]) -> Dict[str, Any]:
    """Export shape of a single lookup"""
    return {
        "Prospect Name": inputs.name,
        "Prospect Company": inputs.company,
        "Enriched Email": row.email or (inputs.email if mode == "verify" else "N/A"),
        "LinkedIn URL": row.linkedin_url or "N/A",
        "Status": row.status,
        "Message": message,
    }


class WebhookClient:
    """HTTP client for the sync webhook"""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.settings = settings or get_settings()
        self.url = self.settings.webhook_url
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    @property
    def enabled(self) -> bool:
        return bool(self.url)

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=self.settings.request_timeout,
                transport=self._transport,
                headers={"Content-Type": "application/json"},
            )
        return self._client

    async def post_results(self, records: List[Dict[str, Any]]) -> SyncResult:
        """
        POST export records to the webhook

        Returns:
            SyncResult with the raw response body and the parsed items

        Raises:
            WebhookError: If no webhook is configured, the request fails or the reply is not 2xx
        """
        if not self.url:
            raise WebhookError("Webhook URL is not configured")

        client = await self._get_client()
        try:
            response = await client.post(self.url, json=records)
        except httpx.HTTPError as e:
            raise WebhookError(f"Failed to sync data to API: {e}") from e

        if not response.is_success:
            raise WebhookError(f"Webhook returned {response.status_code}", response.status_code)

        try:
            parsed = response.json()
        except ValueError:
            logger.warning("Webhook reply was not JSON")
            parsed = None

        items = flatten_api_payload(parsed)
        if items is None:
            items = []
        elif not isinstance(items, list):
            items = [items]

        return SyncResult(
            raw=response.content,
            content_type=response.headers.get("content-type", "application/json"),
            items=[i for i in items if isinstance(i, dict)],
        )

    async def close(self):
        if self._client:
            await self._client.aclose()
            self._client = None
            logger.info("Webhook client closed")


class SyncService:
    """Posts results to the webhook, archives the reply and flags the history entry"""

    def __init__(self, webhook_client: WebhookClient, db_client=None, history_manager=None):
        self.webhook_client = webhook_client
        self.db_client = db_client
        self.history_manager = history_manager

    @staticmethod
    def archive_records(
        items: List[Dict[str, Any]], mode: str, history_id: Optional[str], user_id: str
    ) -> List[Dict[str, Any]]:
        records = []
        for item in items:
            if not isinstance(item, dict):
                continue
            record = {"user_id": user_id, "history_id": history_id, "feature": mode}
            for column, key in ARCHIVE_FIELDS.items():
                record[column] = item.get(key)
            records.append(record)
        return records

    async def sync(
        self,
        mode: str,
        history_id: Optional[str],
        records: List[Dict[str, Any]],
        user_id: Optional[str] = None,
    ) -> SyncResult:
        """
        Send records to the webhook and archive the response

        The history entry is flagged synced only once parsed items were
        archived. Archive and flag failures are logged; only the webhook
        call itself raises.

        Raises:
            WebhookError: If the webhook call fails
        """
        result = await self.webhook_client.post_results(records)
        logger.info(f"Synced {len(records)} {mode} records, webhook returned {len(result.items)} items")

        if not user_id or self.db_client is None:
            return result

        if not result.items:
            logger.warning("Webhook reply had no result items; nothing archived")
            return result

        try:
            result.archived = await self.db_client.insert_sync_results(
                self.archive_records(result.items, mode, history_id, user_id)
            )
        except Exception as e:
            logger.error(f"Failed to archive webhook results: {e}")
            return result

        if history_id and result.archived:
            result.synced = True
            if self.history_manager is not None:
                self.history_manager.mark_synced(mode, history_id)
            try:
                await self.db_client.mark_history_synced(history_id)
            except Exception as e:
                logger.error(f"Failed to flag history {history_id} as synced: {e}")

        return result

    async def get_api_results(
        self,
        mode: str,
        history_id: Optional[str] = None,
        rows: Optional[List[ProspectRow]] = None,
        single_inputs: Optional[SingleInputs] = None,
    ) -> List[Dict[str, Any]]:
        """
        Archived webhook results for a session

        Looks up by history id first; when that yields nothing, falls back to
        every archived result matching the session's inputs.

        Returns:
            Archived rows without internal columns, empty when nothing matches
        """
        if self.db_client is None:
            return []

        data: List[Dict[str, Any]] = []
        if history_id and UUID_RE.match(history_id):
            data = await self.db_client.fetch_sync_results_by_history(history_id)

        if not data:
            if single_inputs is not None:
                data = await self.db_client.find_sync_results_for_inputs(
                    mode,
                    name=single_inputs.name,
                    company=single_inputs.company,
                    email=single_inputs.email,
                )
            else:
                rows = rows or []
                names = [r.name.strip() for r in rows if r.name.strip()]
                companies = [r.company.strip() for r in rows if r.company.strip()]
                emails = [r.email.strip() for r in rows if r.email and r.email.strip()]
                if mode == "verify" and emails:
                    data = await self.db_client.search_sync_results(mode, emails=emails)
                elif mode != "verify" and names:
                    data = await self.db_client.search_sync_results(mode, names=names, companies=companies)

        return strip_internal_columns(data)
