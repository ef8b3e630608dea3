from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Any

import boto3
from botocore.config import Config
from botocore.exceptions import ClientError

from prenv.models import DEFAULT_AWS_REGION
from prenv.services.errors import ConfigurationError, VerificationError

logger = logging.getLogger(__name__)

_MISSING_QUEUE_CODES = frozenset({"AWS.SimpleQueueService.NonExistentQueue", "QueueDoesNotExist"})


def is_queue_url(name_or_url: str) -> bool:
    return name_or_url.startswith("https://")


def is_missing_queue(exc: ClientError) -> bool:
    return exc.response.get("Error", {}).get("Code") in _MISSING_QUEUE_CODES


def create_sqs_client(*, region: str = DEFAULT_AWS_REGION, profile: str = "") -> Any:
    session = boto3.Session(profile_name=profile or None, region_name=region or DEFAULT_AWS_REGION)
    return session.client("sqs", config=Config(retries={"max_attempts": 5, "mode": "standard"}))


@dataclass(frozen=True)
class QueueResult:
    url: str
    created: bool


class SqsAdapter:
    """Queue lifecycle against a single region/profile."""

    def __init__(self, *, client: Any = None, region: str = DEFAULT_AWS_REGION, profile: str = "") -> None:
        self.region = region
        self._client = client if client is not None else create_sqs_client(region=region, profile=profile)

    def ensure_queue_created(self, name_or_url: str, *, create: bool) -> QueueResult:
        if not name_or_url:
            raise ConfigurationError("queue name or URL must be specified")

        if is_queue_url(name_or_url):
            # URLs refer to queues managed elsewhere; only check they exist.
            self._client.get_queue_attributes(QueueUrl=name_or_url, AttributeNames=["QueueArn"])
            return QueueResult(url=name_or_url, created=False)

        try:
            response = self._client.get_queue_url(QueueName=name_or_url)
            return QueueResult(url=response["QueueUrl"], created=False)
        except ClientError as exc:
            if not is_missing_queue(exc):
                raise
        if not create:
            raise VerificationError(
                f"queue {name_or_url} does not exist; set create to true to have it created"
            )
        response = self._client.create_queue(QueueName=name_or_url)
        logger.info("Created SQS queue %s in %s", name_or_url, self.region)
        return QueueResult(url=response["QueueUrl"], created=True)

    def ensure_queue_deleted(self, name_or_url: str) -> bool:
        if not name_or_url:
            return False
        if is_queue_url(name_or_url):
            logger.info("Not deleting queue %s: URL-form queues are managed elsewhere", name_or_url)
            return False

        try:
            url = self._client.get_queue_url(QueueName=name_or_url)["QueueUrl"]
        except ClientError as exc:
            if is_missing_queue(exc):
                return False
            raise
        self._client.delete_queue(QueueUrl=url)
        logger.info("Deleted SQS queue %s in %s", name_or_url, self.region)
        return True

    def resolve_queue_url(self, name_or_url: str) -> str:
        if is_queue_url(name_or_url):
            return name_or_url
        try:
            return self._client.get_queue_url(QueueName=name_or_url)["QueueUrl"]
        except ClientError as exc:
            if is_missing_queue(exc):
                raise VerificationError(f"queue {name_or_url} does not exist") from exc
            raise

    def receive_messages(
        self,
        queue_url: str,
        *,
        max_number_of_messages: int,
        visibility_timeout: int,
        wait_time_seconds: int,
        message_attribute_names: list[str],
    ) -> list[dict[str, Any]]:
        kwargs: dict[str, Any] = {
            "QueueUrl": queue_url,
            "MaxNumberOfMessages": max_number_of_messages,
            "VisibilityTimeout": visibility_timeout,
            "WaitTimeSeconds": wait_time_seconds,
        }
        if message_attribute_names:
            kwargs["MessageAttributeNames"] = message_attribute_names
        return self._client.receive_message(**kwargs).get("Messages", [])

    def send_message(self, queue_url: str, message: dict[str, Any]) -> None:
        kwargs: dict[str, Any] = {"QueueUrl": queue_url, "MessageBody": message["Body"]}
        if message.get("MessageAttributes"):
            kwargs["MessageAttributes"] = message["MessageAttributes"]
        self._client.send_message(**kwargs)

    def delete_message(self, queue_url: str, receipt_handle: str) -> None:
        self._client.delete_message(QueueUrl=queue_url, ReceiptHandle=receipt_handle)
