import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import httpx
import structlog

from app.core.config import settings
from app.core.exceptions import RelayErrorKind

logger = structlog.get_logger()

EXPO_TOKEN_PATTERN = re.compile(r"^Expo(nent)?PushToken\[[^\]]+\]$")


@dataclass
class PushMessage:
    token: str
    title: str
    body: str
    data: Dict[str, Any] = field(default_factory=dict)

    def to_expo(self) -> Dict[str, Any]:
        return {
            "to": self.token,
            "sound": "default",
            "title": self.title,
            "body": self.body,
            "data": self.data,
            "priority": "high",
            "channelId": "default",
        }


@dataclass
class PushOutcome:
    success: bool
    error: Optional[str] = None
    ticket: Optional[Dict[str, Any]] = None


class NotificationDispatcher:
    """
    Fire-and-forget delivery through Expo's push API.
    Never raises: every failure comes back as an unsuccessful PushOutcome.
    """

    BATCH_LIMIT = 100  # Expo accepts at most 100 messages per request

    def __init__(
        self,
        push_url: str = settings.EXPO_PUSH_URL,
        timeout: float = settings.PUSH_TIMEOUT_SECONDS,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.push_url = push_url
        self.timeout = timeout
        self._transport = transport

    @staticmethod
    def is_valid_token(token: Optional[str]) -> bool:
        return bool(token) and bool(EXPO_TOKEN_PATTERN.match(token))

    async def send(self, token: str, title: str, body: str, data: Optional[Dict[str, Any]] = None) -> PushOutcome:
        outcomes = await self.send_many([PushMessage(token, title, body, data or {})])
        return outcomes[0]

    async def send_many(self, messages: List[PushMessage]) -> List[PushOutcome]:
        """
        Send several notifications, batched per request. Outcomes keep input order.
        """
        outcomes: List[Optional[PushOutcome]] = [None] * len(messages)
        deliverable = []
        for index, message in enumerate(messages):
            if self.is_valid_token(message.token):
                deliverable.append((index, message))
            else:
                logger.warning("push_token_invalid", token=message.token)
                outcomes[index] = PushOutcome(success=False, error="Invalid token format")

        for start in range(0, len(deliverable), self.BATCH_LIMIT):
            chunk = deliverable[start:start + self.BATCH_LIMIT]
            results = await self._post([m for _, m in chunk])
            for (index, _), outcome in zip(chunk, results):
                outcomes[index] = outcome

        return outcomes

    async def _post(self, chunk: List[PushMessage]) -> List[PushOutcome]:
        payload = [m.to_expo() for m in chunk]
        headers = {
            "Accept": "application/json",
            "Accept-Encoding": "gzip, deflate",
            "Content-Type": "application/json",
        }

        async with httpx.AsyncClient(transport=self._transport, timeout=self.timeout) as client:
            try:
                response = await client.post(self.push_url, headers=headers, json=payload)
            except httpx.HTTPError as e:
                logger.error("push_request_failed", kind=RelayErrorKind.DELIVERY_FAILURE.value, error=str(e))
                return [PushOutcome(success=False, error=str(e)) for _ in chunk]

        if response.status_code != 200:
            logger.error(
                "push_api_error",
                kind=RelayErrorKind.DELIVERY_FAILURE.value,
                status=response.status_code,
                body=response.text[:500],
            )
            return [PushOutcome(success=False, error=f"HTTP {response.status_code}") for _ in chunk]

        try:
            body = response.json()
        except ValueError as e:
            logger.error("push_parse_error", error=str(e))
            return [PushOutcome(success=False, error="Unreadable push response") for _ in chunk]

        tickets = (body.get("data") if isinstance(body, dict) else None) or []
        # A single message comes back as an object instead of a list
        if isinstance(tickets, dict):
            tickets = [tickets]

        outcomes = []
        for message, ticket in zip(chunk, tickets + [None] * (len(chunk) - len(tickets))):
            if ticket is None:
                outcomes.append(PushOutcome(success=False, error="Missing push ticket"))
            elif ticket.get("status") == "error":
                logger.warning("push_ticket_error", token=message.token, message=ticket.get("message"))
                outcomes.append(PushOutcome(success=False, error=ticket.get("message"), ticket=ticket))
            else:
                outcomes.append(PushOutcome(success=True, ticket=ticket))

        logger.info("push_batch_sent", count=len(chunk), delivered=sum(o.success for o in outcomes))
        return outcomes
