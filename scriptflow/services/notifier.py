"""Best-effort delivery of finished scripts to subscribers through ManyChat."""

import logging
from dataclasses import dataclass, field
from typing import Optional

import httpx

from scriptflow.config import get_settings

settings = get_settings()
logger = logging.getLogger(__name__)


@dataclass
class DeliveryReport:
    """What happened during one delivery attempt. ``calls`` maps step to success."""

    skipped: bool = False
    calls: dict[str, bool] = field(default_factory=dict)

    @property
    def delivered(self) -> bool:
        return not self.skipped and bool(self.calls) and all(self.calls.values())


class ManyChatNotifier:
    """
    Push results to a subscriber.

    With an image: set the image and link custom fields, then send one image
    message with a button opening the public link. Without an image: set the
    text field and send a text message with the link. Every call has its own
    error handling; this class never raises.
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        api_base: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_key = api_key if api_key is not None else settings.manychat_api_key
        self.api_base = (api_base or settings.manychat_api_base).rstrip("/")
        self.timeout = timeout or settings.delivery_timeout_seconds
        self._transport = transport

    async def _post(self, client: httpx.AsyncClient, report: DeliveryReport, step: str, path: str, payload: dict):
        try:
            response = await client.post(f"{self.api_base}{path}", json=payload)
            response.raise_for_status()
            body = response.json() if response.content else {}
            if isinstance(body, dict) and body.get("status") == "error":
                raise ValueError(body.get("message", "ManyChat returned an error status"))
            report.calls[step] = True
        except Exception as e:
            report.calls[step] = False
            logger.error(f"ManyChat {step} failed for subscriber {payload.get('subscriber_id')}: {e}")

    async def _set_field(self, client, report, subscriber_id: str, field_name: str, value: str):
        await self._post(
            client,
            report,
            f"set_field:{field_name}",
            "/fb/subscriber/setCustomFieldByName",
            {"subscriber_id": subscriber_id, "field_name": field_name, "field_value": value},
        )

    async def _send_content(self, client, report, subscriber_id: str, step: str, message: dict):
        await self._post(
            client,
            report,
            step,
            "/fb/sending/sendContent",
            {
                "subscriber_id": subscriber_id,
                "data": {"version": "v2", "content": {"messages": [message]}},
                "message_tag": settings.manychat_message_tag,
            },
        )

    async def deliver(
        self,
        subscriber_id: str,
        script_url: str,
        image_url: Optional[str] = None,
        script_text: Optional[str] = None,
    ) -> DeliveryReport:
        report = DeliveryReport()
        if not self.api_key:
            logger.warning("Skipping ManyChat delivery: MANYCHAT_API_KEY is not set")
            report.skipped = True
            return report

        headers = {"Authorization": f"Bearer {self.api_key}", "Content-Type": "application/json"}
        async with httpx.AsyncClient(
            headers=headers, timeout=self.timeout, transport=self._transport
        ) as client:
            if image_url:
                await self._set_field(client, report, subscriber_id, settings.manychat_image_field, image_url)
                await self._set_field(client, report, subscriber_id, settings.manychat_link_field, script_url)
                await self._send_content(
                    client,
                    report,
                    subscriber_id,
                    "send_image",
                    {
                        "type": "image",
                        "url": image_url,
                        "buttons": [{"type": "url", "caption": "Copy script", "url": script_url}],
                    },
                )
            else:
                await self._set_field(
                    client, report, subscriber_id, settings.manychat_text_field, script_text or ""
                )
                await self._set_field(client, report, subscriber_id, settings.manychat_link_field, script_url)
                await self._send_content(
                    client,
                    report,
                    subscriber_id,
                    "send_text",
                    {"type": "text", "text": f"Your script is ready: {script_url}"},
                )

        if report.delivered:
            logger.info(f"Delivered script to subscriber {subscriber_id}")
        return report


# Singleton instance
manychat_notifier = ManyChatNotifier()
