from __future__ import annotations

import re
from datetime import timedelta

from psycopg.conninfo import make_conninfo
from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

_TABLE_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


class Settings(BaseSettings):
    model_config = SettingsConfigDict(case_sensitive=False)

    pghost: str = Field(alias="PGHOST")
    pgport: int = Field(default=5432, alias="PGPORT")
    pguser: str = Field(alias="PGUSER")
    pgpassword: str = Field(alias="PGPASSWORD")
    pgdatabase: str = Field(alias="PGDATABASE")
    connect_timeout_s: int = Field(default=5, alias="CONNECT_TIMEOUT_S")
    outbox_table: str = Field(default="outbox", alias="OUTBOX_TABLE")

    aws_region: str = Field(alias="AWS_REGION")
    sns_topic_arn: str | None = Field(default=None, alias="SNS_TOPIC_ARN")

    relay_batch_size: int = Field(default=10, alias="RELAY_BATCH_SIZE")
    relay_poll_interval_s: float = Field(default=60.0, alias="RELAY_POLL_INTERVAL_S")
    relay_invocation_timeout_s: float = Field(default=30.0, alias="RELAY_INVOCATION_TIMEOUT_S")
    publish_retry_max_attempts: int = Field(default=3, alias="PUBLISH_RETRY_MAX_ATTEMPTS")
    publish_retry_base_delay_ms: int = Field(default=100, alias="PUBLISH_RETRY_BASE_DELAY_MS")
    publish_retry_max_delay_ms: int = Field(default=2000, alias="PUBLISH_RETRY_MAX_DELAY_MS")

    sqs_queue_url: str | None = Field(default=None, alias="SQS_QUEUE_URL")
    sqs_dead_letter_queue_url: str | None = Field(default=None, alias="SQS_DEAD_LETTER_QUEUE_URL")
    consumer_batch_size: int = Field(default=10, alias="CONSUMER_BATCH_SIZE")
    consumer_wait_time_s: int = Field(default=20, alias="CONSUMER_WAIT_TIME_S")
    consumer_visibility_timeout_s: int = Field(default=30, alias="CONSUMER_VISIBILITY_TIMEOUT_S")
    consumer_delivery_timeout_s: float = Field(default=25.0, alias="CONSUMER_DELIVERY_TIMEOUT_S")
    max_delivery_count: int = Field(default=3, alias="MAX_DELIVERY_COUNT")

    work_order_table: str | None = Field(default=None, alias="WORK_ORDER_TABLE")
    processed_events_table: str | None = Field(default=None, alias="PROCESSED_EVENTS_TABLE")
    dedupe_ttl_days: int = Field(default=7, alias="DEDUPE_TTL_DAYS")

    @field_validator("outbox_table")
    @classmethod
    def _validate_outbox_table(cls, value: str) -> str:
        if not _TABLE_PATTERN.fullmatch(value):
            raise ValueError("OUTBOX_TABLE must be a plain SQL identifier")
        return value

    @field_validator("relay_batch_size")
    @classmethod
    def _validate_relay_batch_size(cls, value: int) -> int:
        if value < 1 or value > 100:
            raise ValueError("RELAY_BATCH_SIZE must be between 1 and 100")
        return value

    @field_validator("relay_poll_interval_s", "relay_invocation_timeout_s", "consumer_delivery_timeout_s")
    @classmethod
    def _validate_positive_seconds(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("interval and timeout settings must be > 0")
        return value

    @field_validator("publish_retry_max_attempts")
    @classmethod
    def _validate_retry_attempts(cls, value: int) -> int:
        if value < 1:
            raise ValueError("PUBLISH_RETRY_MAX_ATTEMPTS must be >= 1")
        return value

    @field_validator("consumer_batch_size")
    @classmethod
    def _validate_consumer_batch_size(cls, value: int) -> int:
        # SQS ReceiveMessage accepts at most 10 messages per call.
        if value < 1 or value > 10:
            raise ValueError("CONSUMER_BATCH_SIZE must be between 1 and 10")
        return value

    @field_validator("consumer_wait_time_s")
    @classmethod
    def _validate_wait_time(cls, value: int) -> int:
        if value < 0 or value > 20:
            raise ValueError("CONSUMER_WAIT_TIME_S must be between 0 and 20")
        return value

    @field_validator("max_delivery_count")
    @classmethod
    def _validate_max_delivery_count(cls, value: int) -> int:
        if value < 1:
            raise ValueError("MAX_DELIVERY_COUNT must be >= 1")
        return value

    @field_validator("dedupe_ttl_days")
    @classmethod
    def _validate_dedupe_ttl(cls, value: int) -> int:
        if value < 1:
            raise ValueError("DEDUPE_TTL_DAYS must be >= 1")
        return value

    @model_validator(mode="after")
    def _validate_retry_delays(self) -> Settings:
        if self.publish_retry_base_delay_ms > self.publish_retry_max_delay_ms:
            raise ValueError(
                "PUBLISH_RETRY_BASE_DELAY_MS must not exceed PUBLISH_RETRY_MAX_DELAY_MS"
            )
        return self

    @property
    def postgres_conninfo(self) -> str:
        return make_conninfo(
            host=self.pghost,
            port=self.pgport,
            user=self.pguser,
            password=self.pgpassword,
            dbname=self.pgdatabase,
            connect_timeout=self.connect_timeout_s,
        )

    @property
    def dedupe_ttl(self) -> timedelta:
        return timedelta(days=self.dedupe_ttl_days)

    def require_publisher(self) -> None:
        if not self.sns_topic_arn:
            raise ValueError("SNS_TOPIC_ARN is required to run the relay publisher")

    def require_consumer(self) -> None:
        missing = [
            name
            for name, value in (
                ("SQS_QUEUE_URL", self.sqs_queue_url),
                ("WORK_ORDER_TABLE", self.work_order_table),
                ("PROCESSED_EVENTS_TABLE", self.processed_events_table),
            )
            if not value
        ]
        if missing:
            raise ValueError(f"{', '.join(missing)} required to run the materializer consumer")
