from __future__ import annotations

import threading

from botocore.exceptions import ClientError, EndpointConnectionError
import pytest

from prenv.models import SQSForwarder
from prenv.services.errors import ConfigurationError, VerificationError
from prenv.sqs_forwarder import Forwarder

SOURCE = "https://sqs.ap-northeast-1.amazonaws.com/123456789012/shared"
DESTINATIONS = [
    "https://sqs.ap-northeast-1.amazonaws.com/123456789012/pr-1",
    "https://sqs.ap-northeast-1.amazonaws.com/123456789012/pr-2",
]


class RecordingEvent(threading.Event):
    """Never blocks; records requested sleeps and cancels after ``limit`` of them."""

    def __init__(self, limit: int = 100) -> None:
        super().__init__()
        self.sleeps: list[float] = []
        self.limit = limit

    def wait(self, timeout=None) -> bool:
        self.sleeps.append(timeout)
        if len(self.sleeps) >= self.limit:
            self.set()
        return self.is_set()


class FakeQueueAdapter:
    def __init__(self, batches: list) -> None:
        self.batches = list(batches)
        self.calls: list[tuple[str, dict]] = []
        self.fail_send_to: set[str] = set()
        self.queue_urls: dict[str, str] = {}

    def resolve_queue_url(self, name_or_url):
        if name_or_url.startswith("https://"):
            return name_or_url
        if name_or_url not in self.queue_urls:
            raise VerificationError(f"queue {name_or_url} does not exist")
        return self.queue_urls[name_or_url]

    def receive_messages(self, queue_url, **kwargs):
        self.calls.append(("receive_messages", {"queue_url": queue_url, **kwargs}))
        batch = self.batches.pop(0) if self.batches else []
        if isinstance(batch, Exception):
            raise batch
        return batch

    def send_message(self, queue_url, message):
        self.calls.append(("send_message", {"queue_url": queue_url, "body": message["Body"]}))
        if queue_url in self.fail_send_to:
            raise EndpointConnectionError(endpoint_url=queue_url)

    def delete_message(self, queue_url, receipt_handle):
        self.calls.append(("delete_message", {"queue_url": queue_url, "receipt_handle": receipt_handle}))


def _config(**overrides) -> SQSForwarder:
    return SQSForwarder(source_queue_url=SOURCE, destination_queue_urls=DESTINATIONS, **overrides)


def _message(n: int) -> dict:
    return {"MessageId": f"m{n}", "Body": f"body-{n}", "ReceiptHandle": f"r{n}"}


def test_forward_once_copies_to_every_destination_then_deletes() -> None:
    sqs = FakeQueueAdapter([[_message(1)]])
    forwarded = Forwarder(_config(), sqs=sqs).forward_once()

    assert forwarded == 1
    assert [(name, c.get("queue_url")) for name, c in sqs.calls] == [
        ("receive_messages", SOURCE),
        ("send_message", DESTINATIONS[0]),
        ("send_message", DESTINATIONS[1]),
        ("delete_message", SOURCE),
    ]
    assert sqs.calls[0][1]["visibility_timeout"] == 30


def test_failed_send_keeps_message_in_source_queue() -> None:
    sqs = FakeQueueAdapter([[_message(1)]])
    sqs.fail_send_to = {DESTINATIONS[0]}
    cancel = RecordingEvent()

    forwarded = Forwarder(_config(send_message_failure_sleep_seconds=7), sqs=sqs, cancel=cancel).forward_once()

    assert forwarded == 0
    assert "delete_message" not in [name for name, _ in sqs.calls]
    assert cancel.sleeps == [7]


def test_receive_failure_sleeps_and_continues() -> None:
    sqs = FakeQueueAdapter([EndpointConnectionError(endpoint_url=SOURCE)])
    cancel = RecordingEvent()

    assert Forwarder(_config(), sqs=sqs, cancel=cancel).forward_once() == 0
    assert cancel.sleeps == [5]


def test_missing_source_queue_stops_the_forwarder() -> None:
    missing = ClientError({"Error": {"Code": "AWS.SimpleQueueService.NonExistentQueue"}}, "ReceiveMessage")
    sqs = FakeQueueAdapter([missing])

    with pytest.raises(VerificationError, match="does not exist"):
        Forwarder(_config(), sqs=sqs).run()


def test_run_loops_until_cancelled() -> None:
    sqs = FakeQueueAdapter([[_message(1)], [], [_message(2)]])
    cancel = RecordingEvent(limit=3)

    Forwarder(_config(sleep_seconds=2), sqs=sqs, cancel=cancel).run()

    assert cancel.sleeps == [2, 2, 2]
    deleted = [c["receipt_handle"] for name, c in sqs.calls if name == "delete_message"]
    assert deleted == ["r1", "r2"]


def test_invalid_configuration_is_rejected() -> None:
    with pytest.raises(ConfigurationError, match="destination queue URL"):
        Forwarder(SQSForwarder(source_queue_url=SOURCE), sqs=FakeQueueAdapter([]))


def test_queue_names_are_resolved_to_urls() -> None:
    sqs = FakeQueueAdapter([[_message(1)], [_message(2)]])
    sqs.queue_urls = {"shared": SOURCE, "pr-1": DESTINATIONS[0]}
    forwarder = Forwarder(
        SQSForwarder(source_queue_url="shared", destination_queue_urls=["pr-1", DESTINATIONS[1]]), sqs=sqs
    )

    assert forwarder.forward_once() == 1
    assert forwarder.forward_once() == 1
    assert [(name, c.get("queue_url")) for name, c in sqs.calls] == [
        ("receive_messages", SOURCE),
        ("send_message", DESTINATIONS[0]),
        ("send_message", DESTINATIONS[1]),
        ("delete_message", SOURCE),
    ] * 2


def test_missing_destination_queue_stops_the_forwarder() -> None:
    sqs = FakeQueueAdapter([[_message(1)]])
    config = SQSForwarder(source_queue_url=SOURCE, destination_queue_urls=["pr-9"])

    with pytest.raises(VerificationError, match="queue pr-9 does not exist"):
        Forwarder(config, sqs=sqs).run()
    assert sqs.calls == []
