"""
GetProspect API client for email finding and email verification
"""
from typing import Optional

import httpx
from loguru import logger

from config import Settings, get_settings
from models import VERIFY_OUTCOMES, FindEmailResult, VerifyEmailResult

NO_EMAIL_FOUND = "No email found"
UNKNOWN_VERIFICATION_STATUS = "Unknown verification status"


class GetProspectClient:
    """
    GetProspect API client

    Both calls fail softly: HTTP and network errors come back as a result
    with success=False and a message, never as an exception.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.settings = settings or get_settings()
        self.api_key = self.settings.getprospect_api_key
        self.base_url = self.settings.getprospect_base_url.rstrip("/")
        self._transport = transport

        # HTTP client
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client"""
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=self.settings.request_timeout,
                transport=self._transport,
                headers={
                    "accept": "application/json",
                    "apiKey": self.api_key,
                    "User-Agent": "Lead-Enrichment-Console/1.0",
                },
            )
        return self._client

    @staticmethod
    def _describe_error(response: httpx.Response) -> str:
        """Turn a non-2xx response into the message stored on the row"""
        return f"API Error: {response.status_code} {response.text}".rstrip()

    async def find_email(self, name: str, company: str) -> FindEmailResult:
        """
        Find a business email for a person at a company

        Args:
            name: Full name of the prospect
            company: Company name or domain

        Returns:
            FindEmailResult, with message "No email found" when the service has no match
        """
        try:
            client = await self._get_client()
            params = {"name": (name or "").strip(), "company": (company or "").strip()}

            logger.debug(f"Finding email for {params['name']} @ {params['company']}")
            response = await client.get(f"{self.base_url}/find", params=params)

            if not response.is_success:
                message = self._describe_error(response)
                logger.warning(f"Email finder failed for {params['name']}: {message}")
                return FindEmailResult(success=False, message=message)

            data = response.json()
            if isinstance(data, dict) and data.get("email"):
                logger.debug(f"Email found for {params['name']}: {data['email']}")
                return FindEmailResult(success=True, email=data["email"])

            return FindEmailResult(success=False, message=NO_EMAIL_FOUND)

        except Exception as e:
            logger.error(f"Email finder call failed for {name}: {e}")
            return FindEmailResult(success=False, message=str(e) or "Network error")

    async def verify_email(self, email: str) -> VerifyEmailResult:
        """
        Classify the deliverability of an email address

        Args:
            email: The email address to verify

        Returns:
            VerifyEmailResult carrying the status and the raw service payload
        """
        try:
            client = await self._get_client()
            params = {"email": (email or "").strip()}

            logger.debug(f"Verifying email: {params['email']}")
            response = await client.get(f"{self.base_url}/verify", params=params)

            if not response.is_success:
                message = self._describe_error(response)
                logger.warning(f"Email verification failed for {params['email']}: {message}")
                return VerifyEmailResult(success=False, message=message)

            data = response.json()
            if isinstance(data, dict) and data.get("status"):
                status = str(data["status"]).lower()
                if status not in VERIFY_OUTCOMES:
                    status = "unknown"
                logger.debug(f"Email verification result for {params['email']}: {status}")
                return VerifyEmailResult(success=True, status=status, raw_data=data)

            return VerifyEmailResult(success=False, message=UNKNOWN_VERIFICATION_STATUS)

        except Exception as e:
            logger.error(f"Email verification call failed for {email}: {e}")
            return VerifyEmailResult(success=False, message=str(e) or "Network error")

    async def close(self):
        """Close HTTP client connections"""
        if self._client:
            await self._client.aclose()
            self._client = None
            logger.info("GetProspect client closed")
