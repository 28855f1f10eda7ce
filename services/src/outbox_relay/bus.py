from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Mapping
from typing import Any, Protocol

LOGGER = logging.getLogger(__name__)

_NON_RETRIABLE_ERROR_CODES = {
    "AuthorizationError",
    "AccessDenied",
    "AccessDeniedException",
    "InvalidParameter",
    "InvalidParameterValue",
    "InvalidSecurity",
    "NotFound",
    "NotFoundException",
    "ValidationException",
}
_NON_RETRIABLE_ERROR_PREFIXES = ("AccessDenied", "KMSAccessDenied", "NotFound")
_OVERSIZE_ERROR_MARKERS = (
    "too large",
    "too long",
    "exceeds the maximum",
    "must be less than",
)
_NON_RETRIABLE_MESSAGE_MARKERS = (
    "access denied",
    "not authorized",
    "topic does not exist",
)


class SnsClient(Protocol):
    def publish(
        self,
        *,
        TopicArn: str,
        Message: str,
        MessageAttributes: dict[str, Any],
    ) -> dict[str, Any]:
        ...


class MessageBus(Protocol):
    async def publish(self, topic: str, message: str, attributes: Mapping[str, str]) -> str | None:
        ...


def create_sns_client(*, region_name: str) -> SnsClient:
    import boto3

    return boto3.client("sns", region_name=region_name)


class PublishError(RuntimeError):
    """Raised when a message could not be handed to the bus."""

    def __init__(self, message: str, *, error_code: str | None, retriable: bool) -> None:
        super().__init__(message)
        self.error_code = error_code
        self.retriable = retriable


class SnsMessageBus:
    """Publishes one message per call, retrying transient SNS failures."""

    def __init__(
        self,
        *,
        client: SnsClient,
        retry_base_delay_ms: int = 100,
        retry_max_delay_ms: int = 2000,
        retry_max_attempts: int = 3,
    ) -> None:
        if retry_max_attempts <= 0:
            raise ValueError("retry_max_attempts must be > 0")

        self._client = client
        self._retry_base_s = retry_base_delay_ms / 1000.0
        self._retry_max_s = retry_max_delay_ms / 1000.0
        self._retry_max_attempts = retry_max_attempts

    async def publish(self, topic: str, message: str, attributes: Mapping[str, str]) -> str | None:
        message_attributes = {
            name: {"DataType": "String", "StringValue": value}
            for name, value in attributes.items()
        }
        attempt = 1

        while True:
            try:
                response = await asyncio.to_thread(
                    self._client.publish,
                    TopicArn=topic,
                    Message=message,
                    MessageAttributes=message_attributes,
                )
            except Exception as exc:
                error_code, error_message = _extract_exception_error(exc)
                if _is_non_retriable_error(code=error_code, message=error_message):
                    LOGGER.error(
                        "sns_publish_non_retriable",
                        extra={"attempt": attempt, "error_code": error_code},
                    )
                    raise PublishError(
                        f"SNS publish rejected: {error_message}",
                        error_code=error_code,
                        retriable=False,
                    ) from exc

                if attempt >= self._retry_max_attempts:
                    LOGGER.error(
                        "sns_publish_retry_exhausted",
                        extra={"attempt": attempt, "error_code": error_code},
                    )
                    raise PublishError(
                        f"SNS publish failed after {attempt} attempt(s): {error_message}",
                        error_code=error_code,
                        retriable=True,
                    ) from exc

                LOGGER.warning(
                    "sns_publish_failed",
                    extra={"attempt": attempt, "error_code": error_code},
                )
                await asyncio.sleep(self._retry_delay(attempt - 1))
                attempt += 1
                continue

            return response.get("MessageId")

    def _retry_delay(self, attempt: int) -> float:
        exponential = min(self._retry_max_s, self._retry_base_s * (2**attempt))
        return exponential * random.uniform(0.8, 1.2)


def _extract_exception_error(exc: Exception) -> tuple[str | None, str | None]:
    response = getattr(exc, "response", None)
    if isinstance(response, dict):
        error = response.get("Error")
        if isinstance(error, dict):
            code = error.get("Code")
            message = error.get("Message")
            return (
                str(code) if code is not None else None,
                str(message) if message is not None else None,
            )

    return None, str(exc)


def _is_non_retriable_error(*, code: str | None, message: str | None) -> bool:
    normalized_code = code.strip() if code else None
    if normalized_code:
        if normalized_code in _NON_RETRIABLE_ERROR_CODES:
            return True
        if any(normalized_code.startswith(prefix) for prefix in _NON_RETRIABLE_ERROR_PREFIXES):
            return True

    message_lc = message.lower() if message else ""
    if "validation" in message_lc:
        return True
    if any(marker in message_lc for marker in _NON_RETRIABLE_MESSAGE_MARKERS):
        return True
    return any(marker in message_lc for marker in _OVERSIZE_ERROR_MARKERS)
