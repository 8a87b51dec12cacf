"""
Perplexity AI API client for LinkedIn profile lookup and column suggestion
"""
import json
import re
from typing import List, Optional

import httpx
from loguru import logger

from config import Settings, get_settings
from models import ColumnMapping, LinkedInLookupResult

NO_PROFILE_FOUND = "No LinkedIn profile found"

LINKEDIN_PROFILE_RE = re.compile(
    r"https?://(?:[a-z]{2,3}\.)?linkedin\.com/in/[A-Za-z0-9_\-%.]+/?", re.IGNORECASE
)


class PerplexityAPIError(Exception):
    """Custom exception for Perplexity API errors"""
    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class PerplexityClient:
    """Perplexity AI API client; public calls never raise"""

    BASE_URL = "https://api.perplexity.ai"

    def __init__(
        self,
        settings: Optional[Settings] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.settings = settings or get_settings()
        self.api_key = self.settings.perplexity_api_key
        self.model = self.settings.perplexity_model
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
                    "Content-Type": "application/json",
                    "User-Agent": "Lead-Enrichment-Console/1.0",
                },
            )
        return self._client

    def _handle_api_error(self, response: httpx.Response) -> None:
        """Handle API errors and raise appropriate exceptions"""
        if response.status_code == 401:
            raise PerplexityAPIError("Invalid API key", 401)
        elif response.status_code == 429:
            raise PerplexityAPIError("Rate limit exceeded", 429)
        elif response.status_code >= 500:
            raise PerplexityAPIError(f"Server error: {response.status_code}", response.status_code)
        elif not response.is_success:
            raise PerplexityAPIError(
                f"API error: {response.status_code} - {response.text}", response.status_code
            )

    async def _complete(self, system: str, prompt: str, max_tokens: int = 200) -> str:
        """Run one chat completion and return the message content"""
        if not self.api_key:
            raise PerplexityAPIError("Perplexity API key is not configured")

        client = await self._get_client()
        payload = {
            "model": self.model,
            "messages": [
                {"role": "system", "content": system},
                {"role": "user", "content": prompt},
            ],
            "max_tokens": max_tokens,
            "temperature": 0.1,  # Low temperature for factual responses
            "top_p": 0.9,
        }

        response = await client.post(
            f"{self.BASE_URL}/chat/completions",
            headers={"Authorization": f"Bearer {self.api_key}"},
            json=payload,
        )
        self._handle_api_error(response)

        data = response.json()
        return data.get("choices", [{}])[0].get("message", {}).get("content", "").strip()

    @staticmethod
    def extract_profile_url(content: str) -> Optional[str]:
        """Pull the first LinkedIn profile URL out of a model reply"""
        if not content or "NOT_FOUND" in content:
            return None
        match = LINKEDIN_PROFILE_RE.search(content)
        return match.group(0) if match else None

    async def find_linkedin_url(self, name: str, company: str) -> LinkedInLookupResult:
        """
        Guess the LinkedIn profile URL of a person

        Args:
            name: Full name of the person
            company: Company name or domain for context

        Returns:
            LinkedInLookupResult, with message "No LinkedIn profile found" when the model has no answer
        """
        prompt = f"""Find the LinkedIn profile URL for {(name or '').strip()} who works at or is associated with {(company or '').strip()}.

Please provide only the LinkedIn profile URL in the format: https://www.linkedin.com/in/username
If you cannot find a definitive LinkedIn profile, respond with "NOT_FOUND".
Do not include any other text or explanation."""

        try:
            logger.debug(f"Making LinkedIn profile search for {name} @ {company}")
            content = await self._complete(
                "You are an expert research assistant specializing in finding professional LinkedIn profiles.",
                prompt,
            )
            url = self.extract_profile_url(content)
            if url:
                logger.debug(f"LinkedIn profile found for {name}: {url}")
                return LinkedInLookupResult(success=True, url=url)

            logger.debug(f"No LinkedIn profile found for {name}")
            return LinkedInLookupResult(success=False, message=NO_PROFILE_FOUND)

        except Exception as e:
            logger.warning(f"Failed to find LinkedIn profile for {name}: {e}")
            return LinkedInLookupResult(success=False, message=str(e) or "Network error")

    async def suggest_mappings(self, headers: List[str]) -> Optional[ColumnMapping]:
        """
        Ask the model which spreadsheet columns hold the person name and company

        Args:
            headers: Column headers of the uploaded sheet

        Returns:
            ColumnMapping with the suggested headers, None if the model gave no usable answer
        """
        if not headers:
            return None

        prompt = f"""Given these spreadsheet column headers: {json.dumps(headers)}
Identify which header contains the person's full name and which contains the company name or domain.
Respond with JSON only, in the form {{"nameHeader": "...", "companyHeader": "..."}}.
Use an empty string when no header fits."""

        try:
            content = await self._complete(
                "You map spreadsheet columns to prospect fields. Respond with JSON only.",
                prompt,
                max_tokens=100,
            )
            match = re.search(r"\{.*\}", content, re.DOTALL)
            if not match:
                logger.warning(f"Column suggestion reply had no JSON: {content[:200]}")
                return None

            data = json.loads(match.group(0))
            return ColumnMapping(
                name_header=str(data.get("nameHeader") or ""),
                company_header=str(data.get("companyHeader") or ""),
            )

        except Exception as e:
            logger.warning(f"Column suggestion failed: {e}")
            return None

    async def close(self):
        """Close HTTP client connections"""
        if self._client:
            await self._client.aclose()
            self._client = None
            logger.info("Perplexity client closed")
