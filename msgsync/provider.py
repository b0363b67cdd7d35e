"""
Messaging provider integration.

The provider exposes two endpoints addressed by an API token:
- GET  /receivedMessages/{token}?page=N&phonenumber=DIGITS  (inbox pages)
- POST /sendMsg/{token}  form fields: phonenumber, message, link

Inbox responses have no fixed schema. The message array may sit under
`messages`, under `data`, or be the top-level value, and each message names
its fields in one of several ways. normalize_page() folds all of them into
InboundRecord objects.
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

import httpx

from msgsync.config import settings
from msgsync.schemas import InboundRecord
from msgsync.utils import digits_only, parse_ts, utc_now

logger = logging.getLogger(__name__)


BODY_KEYS = ("message", "text", "body")
SENDER_KEYS = ("sender", "from", "phone")
TIME_KEYS = ("timestamp", "time", "date")
ARRAY_KEYS = ("messages", "data")

UNKNOWN_SENDER = "Unknown"


class ProviderError(Exception):
    """Provider unreachable, answered with an error status, or sent invalid JSON."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.message = message
        self.status_code = status_code
        super().__init__(self.message)


# =============================================================================
# Response Normalization
# =============================================================================

def extract_messages(payload: Any) -> List[Any]:
    """Return the raw message array from any known response shape, else []."""
    if isinstance(payload, list):
        return payload
    if isinstance(payload, dict):
        for key in ARRAY_KEYS:
            value = payload.get(key)
            if isinstance(value, list):
                return value
    return []


def _first_value(item: Dict[str, Any], keys) -> Any:
    for key in keys:
        value = item.get(key)
        if value:
            return value
    return None


def normalize_message(item: Any, now: Optional[datetime] = None) -> Optional[InboundRecord]:
    """
    Normalize one provider message.

    Missing body becomes "", missing sender becomes "Unknown", and a missing
    or unparseable time becomes `now`. Non-object entries yield None.
    """
    if not isinstance(item, dict):
        return None

    body = _first_value(item, BODY_KEYS)
    sender = _first_value(item, SENDER_KEYS)
    moment = parse_ts(_first_value(item, TIME_KEYS))

    return InboundRecord(
        sender=str(sender) if sender is not None else UNKNOWN_SENDER,
        body=str(body) if body is not None else "",
        time=moment or now or utc_now(),
    )


def normalize_page(payload: Any, now: Optional[datetime] = None) -> List[InboundRecord]:
    """
    Normalize a whole inbox page.

    Records with empty bodies are kept here; callers decide whether to store
    them. A payload matching no known shape yields [].
    """
    now = now or utc_now()
    records = []
    for item in extract_messages(payload):
        record = normalize_message(item, now=now)
        if record is not None:
            records.append(record)
    return records


# =============================================================================
# HTTP Client
# =============================================================================

class ProviderClient:
    """
    Async client for the messaging provider.

    Pass `transport` to substitute the network (tests use httpx.MockTransport).
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = (base_url or settings.PROVIDER_BASE_URL).rstrip("/")
        self.client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=timeout or settings.PROVIDER_TIMEOUT_SECONDS,
            transport=transport,
        )

    async def aclose(self) -> None:
        await self.client.aclose()

    async def __aenter__(self) -> "ProviderClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def fetch_received(self, token: str, phone_number: str, page: int = 1) -> Any:
        """
        Fetch one raw inbox page.

        Raises:
            ProviderError: on network failure, non-2xx status or invalid JSON
        """
        params = {"page": page, "phonenumber": digits_only(phone_number)}
        logger.debug(
            "Fetching provider inbox page",
            extra={"page": page, "url": f"{self.base_url}/receivedMessages/[API_KEY]"},
        )
        try:
            response = await self.client.get(f"/receivedMessages/{token}", params=params)
        except httpx.HTTPError as e:
            raise ProviderError(f"Inbox request failed: {e.__class__.__name__}") from e

        if response.status_code >= 400:
            raise ProviderError(
                f"Inbox request returned {response.status_code}",
                status_code=response.status_code,
            )

        try:
            return response.json()
        except ValueError as e:
            raise ProviderError("Inbox response is not valid JSON") from e

    async def fetch_received_page(
        self, token: str, phone_number: str, page: int = 1
    ) -> List[InboundRecord]:
        """Fetch and normalize one inbox page."""
        payload = await self.fetch_received(token, phone_number, page=page)
        records = normalize_page(payload)
        logger.debug(f"Provider page {page}: {len(records)} records")
        return records

    async def send_message(
        self,
        token: str,
        recipient: str,
        message: str,
        link: Optional[str] = None,
    ) -> None:
        """
        Send an outbound message.

        Raises:
            ProviderError: on network failure or non-2xx status
        """
        form = {"phonenumber": recipient, "message": message}
        if link:
            form["link"] = link

        logger.info(f"Sending message through provider to {recipient}")
        try:
            response = await self.client.post(f"/sendMsg/{token}", data=form)
        except httpx.HTTPError as e:
            raise ProviderError(f"Send request failed: {e.__class__.__name__}") from e

        if response.status_code >= 400:
            logger.error(f"Provider rejected message: {response.status_code} {response.text[:200]}")
            raise ProviderError(
                f"Send request returned {response.status_code}",
                status_code=response.status_code,
            )
