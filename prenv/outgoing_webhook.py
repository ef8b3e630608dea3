from __future__ import annotations

import logging
import os
from typing import Any, Mapping

from fastapi import FastAPI, Request, Response, status
import httpx

from prenv.models import OutgoingWebhook
from prenv.services.errors import ConfigurationError

logger = logging.getLogger(__name__)

SLACK_WEBHOOK_URL_ENV = "SLACK_WEBHOOK_URL"
MESSAGE_TEXT = "New message"
ATTACHMENT_COLOR = "#36a64f"


def resolve_webhook(webhook: OutgoingWebhook, *, environ: Mapping[str, str] | None = None) -> OutgoingWebhook:
    """Fill an empty webhook URL from SLACK_WEBHOOK_URL and validate the result."""
    env = os.environ if environ is None else environ
    from_env = env.get(SLACK_WEBHOOK_URL_ENV, "")
    if from_env:
        if webhook.webhook_url:
            logger.warning("%s is set but a webhook URL was also given; using the given URL", SLACK_WEBHOOK_URL_ENV)
        else:
            webhook = webhook.model_copy(update={"webhook_url": from_env})
    problems = webhook.problems()
    if problems:
        raise ConfigurationError("invalid outgoing-webhook configuration: " + "; ".join(problems))
    return webhook


def build_slack_message(webhook: OutgoingWebhook, form: list[tuple[str, str]]) -> dict[str, Any]:
    grouped: dict[str, list[str]] = {}
    for key, value in form:
        grouped.setdefault(key, []).append(value)
    fields = [{"title": key, "value": ", ".join(values), "short": "true"} for key, values in grouped.items()]
    return {
        "channel": webhook.channel,
        "username": webhook.username,
        "text": MESSAGE_TEXT,
        "attachments": [{"fallback": MESSAGE_TEXT, "color": ATTACHMENT_COLOR, "fields": fields}],
    }


def create_app(webhook: OutgoingWebhook, *, transport: httpx.AsyncBaseTransport | None = None) -> FastAPI:
    """Form POSTs to ``/`` become one Slack message each."""
    app = FastAPI(title="prenv outgoing webhook", docs_url=None, redoc_url=None, openapi_url=None)

    @app.post("/")
    async def notify(request: Request) -> Response:
        form = await request.form()
        message = build_slack_message(webhook, [(k, str(v)) for k, v in form.multi_items()])
        try:
            async with httpx.AsyncClient(transport=transport, timeout=10.0) as client:
                response = await client.post(webhook.webhook_url, json=message)
        except httpx.HTTPError as exc:
            logger.error("Failed to send message to Slack: %s", exc)
            return Response(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR)
        if response.status_code != status.HTTP_200_OK:
            logger.error("Failed to send message to Slack: %s %s", response.status_code, response.text)
            return Response(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR)
        return Response(status_code=status.HTTP_200_OK)

    return app
