from __future__ import annotations

from contextlib import contextmanager
import logging
import signal
import threading
from typing import Iterator, NoReturn

from botocore.exceptions import BotoCoreError, ClientError
import typer
import uvicorn
import yaml

from prenv.chain import Chain, ChainResult
from prenv.loader import build_pull_request_env_args, load_chain_config
from prenv.logging_config import configure_logging, redact_secrets
from prenv.models import DEFAULT_AWS_REGION, OutgoingWebhook, SQSForwarder
from prenv.outgoing_webhook import create_app, resolve_webhook
from prenv.proc import AdapterCommandError
from prenv.provisioners import OUTGOING_WEBHOOK_PORT
from prenv.services.errors import PrenvException
from prenv.services.github import GitHubClient
from prenv.services.kube_adapter import KubeAdapter
from prenv.services.registry import registry_from_settings
from prenv.services.sqs_adapter import SqsAdapter
from prenv.settings import Settings
from prenv.sqs_forwarder import Forwarder

configure_logging()
logger = logging.getLogger(__name__)
app = typer.Typer(help="prenv: per-pull-request environments", pretty_exceptions_show_locals=False)

_HANDLED_ERRORS = (PrenvException, AdapterCommandError, ClientError, BotoCoreError)


def _exit_for_error(exc: Exception) -> NoReturn:
    logger.warning("prenv failed: %s", exc)
    typer.echo(f"Error: {redact_secrets(str(exc))}", err=True)
    if isinstance(exc, AdapterCommandError) and exc.retryable:
        typer.echo("The failure looks transient; running the same command again is safe.", err=True)
    raise typer.Exit(code=1)


def _echo_yaml(data: object) -> None:
    typer.echo(yaml.safe_dump(data, sort_keys=False), nl=False)


@contextmanager
def _cancel_on_signals() -> Iterator[threading.Event]:
    """Turn SIGINT/SIGTERM into a cancellation event for the duration of the block."""
    cancel = threading.Event()

    def handle(signum: int, frame: object) -> None:
        logger.info("Received signal %d, stopping at the next step boundary", signum)
        cancel.set()

    previous = {sig: signal.signal(sig, handle) for sig in (signal.SIGINT, signal.SIGTERM)}
    try:
        yield cancel
    finally:
        for sig, handler in previous.items():
            signal.signal(sig, handler)


def _build_chain(settings: Settings, *, github: GitHubClient, cancel: threading.Event) -> Chain:
    loaded = load_chain_config(settings)
    logger.info("Loaded configuration from %s", loaded.source)
    kube = KubeAdapter()
    env_args = None
    if loaded.config.args is None:
        env_args = build_pull_request_env_args(
            loaded.config,
            settings=settings,
            event=loaded.event,
            github=github if settings.github.token else None,
        )
    return Chain(
        loaded.config,
        settings=settings,
        registry=registry_from_settings(settings, kube=kube),
        kube=kube,
        github=github,
        env_args=env_args,
        triggered_by=loaded.triggered_by,
        action=loaded.action,
        cancel=cancel,
    )


def _run_chain(operation: str) -> None:
    settings = Settings.from_env()
    result: ChainResult | None = None
    with _cancel_on_signals() as cancel, GitHubClient(settings.github) as github:
        try:
            chain = _build_chain(settings, github=github, cancel=cancel)
            if operation == "apply":
                result = chain.apply()
            elif operation == "destroy":
                result = chain.destroy()
            else:
                result = chain.run_action()
        except _HANDLED_ERRORS as e:
            _exit_for_error(e)
    _echo_yaml(result.summary())


@app.command("apply")
def apply() -> None:
    """Create or update the environment for the current pull request."""
    _run_chain("apply")


@app.command("destroy")
def destroy() -> None:
    """Tear down the environment for the current pull request."""
    _run_chain("destroy")


@app.command("action")
def action() -> None:
    """Apply or destroy depending on the action of the triggering dispatch event."""
    _run_chain("action")


@app.command("sqs-forwarder")
def sqs_forwarder(
    source_queue_url: str = typer.Option(
        "", "--source-queue-url", help="Queue name or URL to receive messages from."
    ),
    destination_queue_urls: str = typer.Option(
        "", "--destination-queue-urls", help="Comma-separated queue names or URLs every message is copied to."
    ),
    aws_region: str = typer.Option(DEFAULT_AWS_REGION, "--aws-region"),
    aws_profile: str = typer.Option("", "--aws-profile"),
    max_number_of_messages: int = typer.Option(10, "--max-number-of-messages"),
    visibility_timeout: int = typer.Option(30, "--visibility-timeout", help="Seconds."),
    wait_time_seconds: int = typer.Option(20, "--wait-time-seconds"),
    sleep_seconds: int = typer.Option(1, "--sleep-seconds"),
    receive_message_failure_sleep_seconds: int = typer.Option(5, "--receive-message-failure-sleep-seconds"),
    send_message_failure_sleep_seconds: int = typer.Option(5, "--send-message-failure-sleep-seconds"),
    delete_message_failure_sleep_seconds: int = typer.Option(5, "--delete-message-failure-sleep-seconds"),
    message_attribute_names: list[str] = typer.Option(
        [], "--message-attribute-name", help="Message attribute to carry over; repeatable."
    ),
    log_level: str = typer.Option("", "--log-level"),
) -> None:
    """Relay messages from a shared queue to per-environment queues until stopped."""
    if log_level:
        configure_logging(level=log_level)
    config = SQSForwarder(
        source_queue_url=source_queue_url,
        destination_queue_urls=[url.strip() for url in destination_queue_urls.split(",") if url.strip()],
        aws_region=aws_region,
        aws_profile=aws_profile,
        max_number_of_messages=max_number_of_messages,
        visibility_timeout_seconds=visibility_timeout,
        wait_time_seconds=wait_time_seconds,
        sleep_seconds=sleep_seconds,
        receive_message_failure_sleep_seconds=receive_message_failure_sleep_seconds,
        send_message_failure_sleep_seconds=send_message_failure_sleep_seconds,
        delete_message_failure_sleep_seconds=delete_message_failure_sleep_seconds,
        message_attribute_names=message_attribute_names,
        log_level=log_level,
    )
    with _cancel_on_signals() as cancel:
        try:
            sqs = SqsAdapter(region=config.aws_region, profile=config.aws_profile)
            Forwarder(config, sqs=sqs, cancel=cancel).run()
        except _HANDLED_ERRORS as e:
            _exit_for_error(e)


@app.command("outgoing-webhook")
def outgoing_webhook(
    webhook_url: str = typer.Option("", "--webhook-url", help="Slack incoming webhook; defaults to SLACK_WEBHOOK_URL."),
    channel: str = typer.Option("", "--channel"),
    username: str = typer.Option("", "--username"),
    host: str = typer.Option("0.0.0.0", "--host"),
    port: int = typer.Option(OUTGOING_WEBHOOK_PORT, "--port"),
) -> None:
    """Serve an endpoint that turns form POSTs into Slack messages."""
    try:
        webhook = resolve_webhook(OutgoingWebhook(webhook_url=webhook_url, channel=channel, username=username))
    except PrenvException as e:
        _exit_for_error(e)
    logger.info("Starting outgoing webhook on %s:%d", host, port)
    uvicorn.run(create_app(webhook), host=host, port=port, log_level="info")


if __name__ == "__main__":
    app()
