from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Protocol

from pydantic import BaseModel, ConfigDict

from outbox_relay.errors import EnvelopeDecodeError

LOGGER = logging.getLogger(__name__)

_RECEIVE_COUNT_ATTRIBUTE = "ApproximateReceiveCount"


class Delivery(BaseModel):
    """One delivery attempt of a queued message."""

    model_config = ConfigDict(frozen=True)

    message_id: str
    receipt_handle: str
    body: str
    receive_count: int = 1


class QueueSubscription(Protocol):
    async def receive(self, *, max_messages: int, wait_time_s: int) -> list[Delivery]:
        ...

    async def ack(self, delivery: Delivery) -> None:
        ...

    async def dead_letter(self, delivery: Delivery) -> bool:
        """Move a delivery to the dead-letter queue; False when left to the queue's redrive policy."""
        ...


class SqsClient(Protocol):
    def receive_message(self, **kwargs: Any) -> dict[str, Any]:
        ...

    def delete_message(self, *, QueueUrl: str, ReceiptHandle: str) -> dict[str, Any]:
        ...

    def send_message(self, **kwargs: Any) -> dict[str, Any]:
        ...


def create_sqs_client(*, region_name: str) -> SqsClient:
    import boto3

    return boto3.client("sqs", region_name=region_name)


def unwrap_notification(body: str) -> str:
    """Return the published message from an SNS notification body.

    Queues subscribed with raw message delivery receive the message as-is.
    """

    try:
        decoded = json.loads(body)
    except json.JSONDecodeError as exc:
        raise EnvelopeDecodeError("Message body is not valid JSON") from exc

    if isinstance(decoded, dict) and decoded.get("Type") == "Notification":
        message = decoded.get("Message")
        if not isinstance(message, str):
            raise EnvelopeDecodeError("SNS notification has no string 'Message'")
        return message

    return body


class SqsSubscription:
    def __init__(
        self,
        *,
        client: SqsClient,
        queue_url: str,
        dead_letter_queue_url: str | None = None,
        visibility_timeout_s: int = 30,
    ) -> None:
        self._client = client
        self._queue_url = queue_url
        self._dead_letter_queue_url = dead_letter_queue_url
        self._visibility_timeout_s = visibility_timeout_s

    async def receive(self, *, max_messages: int, wait_time_s: int) -> list[Delivery]:
        response = await asyncio.to_thread(
            self._client.receive_message,
            QueueUrl=self._queue_url,
            MaxNumberOfMessages=max_messages,
            WaitTimeSeconds=wait_time_s,
            VisibilityTimeout=self._visibility_timeout_s,
            AttributeNames=[_RECEIVE_COUNT_ATTRIBUTE],
        )
        return [_to_delivery(message) for message in response.get("Messages", [])]

    async def ack(self, delivery: Delivery) -> None:
        await asyncio.to_thread(
            self._client.delete_message,
            QueueUrl=self._queue_url,
            ReceiptHandle=delivery.receipt_handle,
        )

    async def dead_letter(self, delivery: Delivery) -> bool:
        if self._dead_letter_queue_url is None:
            return False

        await asyncio.to_thread(
            self._client.send_message,
            QueueUrl=self._dead_letter_queue_url,
            MessageBody=delivery.body,
            MessageAttributes={
                "sourceMessageId": {"DataType": "String", "StringValue": delivery.message_id},
                "receiveCount": {"DataType": "Number", "StringValue": str(delivery.receive_count)},
            },
        )
        await self.ack(delivery)
        return True


def _to_delivery(message: dict[str, Any]) -> Delivery:
    attributes = message.get("Attributes") or {}
    try:
        receive_count = int(attributes.get(_RECEIVE_COUNT_ATTRIBUTE, 1))
    except (TypeError, ValueError):
        LOGGER.warning("sqs_receive_count_invalid", extra={"message_id": message.get("MessageId")})
        receive_count = 1

    return Delivery(
        message_id=str(message["MessageId"]),
        receipt_handle=str(message["ReceiptHandle"]),
        body=str(message.get("Body", "")),
        receive_count=receive_count,
    )
