from __future__ import annotations

import logging
import threading
from typing import Any

from botocore.exceptions import BotoCoreError, ClientError

from prenv.models import SQSForwarder
from prenv.services.errors import ConfigurationError, VerificationError
from prenv.services.sqs_adapter import SqsAdapter, is_missing_queue

logger = logging.getLogger(__name__)


class Forwarder:
    """Copies every message of the source queue to each destination queue.

    Queues may be given by name or URL; names are resolved once, before the
    first receive. A message is deleted from the source only after all
    destinations accepted it; otherwise it becomes visible again after the
    visibility timeout and is retried. Runs until ``cancel`` is set.
    """

    def __init__(self, config: SQSForwarder, *, sqs: SqsAdapter, cancel: threading.Event | None = None) -> None:
        problems = config.problems()
        if problems:
            raise ConfigurationError("invalid sqs-forwarder configuration: " + "; ".join(problems))
        self.config = config
        self.sqs = sqs
        self.cancel = cancel or threading.Event()
        self.source_url = ""
        self.destination_urls: list[str] = []

    def run(self) -> None:
        logger.info(
            "Forwarding %s to %d destination queue(s)",
            self.config.source_queue_url,
            len(self.config.destination_queue_urls),
        )
        while not self.cancel.is_set():
            self.forward_once()
            if self._sleep(self.config.sleep_seconds):
                break
        logger.info("sqs-forwarder stopped")

    def forward_once(self) -> int:
        """One receive round; returns how many messages were fully forwarded."""
        if not self.source_url and not self._resolve_queues():
            return 0
        try:
            messages = self.sqs.receive_messages(
                self.source_url,
                max_number_of_messages=self.config.max_number_of_messages,
                visibility_timeout=self.config.visibility_timeout_seconds,
                wait_time_seconds=self.config.wait_time_seconds,
                message_attribute_names=self.config.message_attribute_names,
            )
        except (ClientError, BotoCoreError) as exc:
            if isinstance(exc, ClientError) and is_missing_queue(exc):
                raise VerificationError(f"source queue {self.source_url} does not exist") from exc
            logger.error("Failed to receive messages from %s: %s", self.source_url, exc)
            self._sleep(self.config.receive_message_failure_sleep_seconds)
            return 0

        forwarded = 0
        for message in messages:
            if self.cancel.is_set():
                break
            if self._send_to_all(message) and self._delete(message):
                forwarded += 1
        if messages:
            logger.debug("Forwarded %d of %d message(s)", forwarded, len(messages))
        return forwarded

    def _resolve_queues(self) -> bool:
        # a missing queue raises VerificationError and stops the daemon
        try:
            source = self.sqs.resolve_queue_url(self.config.source_queue_url)
            destinations = [self.sqs.resolve_queue_url(q) for q in self.config.destination_queue_urls]
        except (ClientError, BotoCoreError) as exc:
            logger.error("Failed to resolve queue URLs: %s", exc)
            self._sleep(self.config.receive_message_failure_sleep_seconds)
            return False
        self.source_url = source
        self.destination_urls = destinations
        return True

    def _send_to_all(self, message: dict[str, Any]) -> bool:
        ok = True
        for url in self.destination_urls:
            try:
                self.sqs.send_message(url, message)
            except (ClientError, BotoCoreError) as exc:
                logger.error("Failed to send message %s to %s: %s", message.get("MessageId", "?"), url, exc)
                self._sleep(self.config.send_message_failure_sleep_seconds)
                ok = False
        return ok

    def _delete(self, message: dict[str, Any]) -> bool:
        try:
            self.sqs.delete_message(self.source_url, message["ReceiptHandle"])
        except (ClientError, BotoCoreError) as exc:
            logger.error("Failed to delete message %s from source queue: %s", message.get("MessageId", "?"), exc)
            self._sleep(self.config.delete_message_failure_sleep_seconds)
            return False
        return True

    def _sleep(self, seconds: int) -> bool:
        return self.cancel.wait(seconds)
