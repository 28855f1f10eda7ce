from __future__ import annotations

import asyncio
import logging
import os

from outbox_relay.bus import MessageBus, SnsMessageBus, create_sns_client
from outbox_relay.consumer import QueueConsumer
from outbox_relay.dynamodb import DynamoDedupeLedger, DynamoProjectionStore, create_dynamodb_table
from outbox_relay.ledger import PostgresChangeLedger
from outbox_relay.materializer import IdempotentMaterializer
from outbox_relay.publisher import RelayPublisher, RelayResult
from outbox_relay.settings import Settings
from outbox_relay.subscription import SqsSubscription, create_sqs_client

LOGGER = logging.getLogger(__name__)


def configure_logging() -> None:
    level_name = os.getenv("LOG_LEVEL", "INFO").upper()
    level = getattr(logging, level_name, logging.INFO)
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )


async def run_publisher(settings: Settings, *, stop_event: asyncio.Event | None = None) -> None:
    settings.require_publisher()
    bus = SnsMessageBus(
        client=create_sns_client(region_name=settings.aws_region),
        retry_base_delay_ms=settings.publish_retry_base_delay_ms,
        retry_max_delay_ms=settings.publish_retry_max_delay_ms,
        retry_max_attempts=settings.publish_retry_max_attempts,
    )
    stop_event = stop_event or asyncio.Event()

    LOGGER.info(
        "publisher_start",
        extra={
            "topic": settings.sns_topic_arn,
            "batch_size": settings.relay_batch_size,
            "poll_interval_s": settings.relay_poll_interval_s,
        },
    )

    while not stop_event.is_set():
        try:
            await asyncio.wait_for(
                publisher_tick(settings=settings, bus=bus),
                timeout=settings.relay_invocation_timeout_s,
            )
        except asyncio.CancelledError:
            raise
        except Exception:
            # Fatal for this tick only; the next tick starts from the ledger again.
            LOGGER.exception("publisher_tick_failed")

        try:
            await asyncio.wait_for(stop_event.wait(), timeout=settings.relay_poll_interval_s)
        except asyncio.TimeoutError:
            pass

    LOGGER.info("publisher_stopped")


async def publisher_tick(*, settings: Settings, bus: MessageBus) -> RelayResult:
    ledger = await PostgresChangeLedger.connect(
        conninfo=settings.postgres_conninfo,
        table=settings.outbox_table,
    )
    try:
        publisher = RelayPublisher(
            ledger=ledger,
            bus=bus,
            topic=str(settings.sns_topic_arn),
            batch_size=settings.relay_batch_size,
        )
        return await publisher.relay_batch()
    finally:
        await ledger.close()


async def run_consumer(settings: Settings, *, stop_event: asyncio.Event | None = None) -> None:
    settings.require_consumer()
    materializer = IdempotentMaterializer(
        dedupe=DynamoDedupeLedger(
            table=create_dynamodb_table(
                region_name=settings.aws_region,
                table_name=str(settings.processed_events_table),
            )
        ),
        store=DynamoProjectionStore(
            table=create_dynamodb_table(
                region_name=settings.aws_region,
                table_name=str(settings.work_order_table),
            )
        ),
        dedupe_ttl=settings.dedupe_ttl,
    )
    consumer = QueueConsumer(
        subscription=SqsSubscription(
            client=create_sqs_client(region_name=settings.aws_region),
            queue_url=str(settings.sqs_queue_url),
            dead_letter_queue_url=settings.sqs_dead_letter_queue_url,
            visibility_timeout_s=settings.consumer_visibility_timeout_s,
        ),
        materializer=materializer,
        max_delivery_count=settings.max_delivery_count,
        batch_size=settings.consumer_batch_size,
        wait_time_s=settings.consumer_wait_time_s,
        delivery_timeout_s=settings.consumer_delivery_timeout_s,
    )

    LOGGER.info(
        "consumer_start",
        extra={
            "queue_url": settings.sqs_queue_url,
            "max_delivery_count": settings.max_delivery_count,
        },
    )
    await consumer.run(stop_event=stop_event)
    LOGGER.info("consumer_stopped")
