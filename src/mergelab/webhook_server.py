from __future__ import annotations

import hmac
import json
import logging

from fastapi import BackgroundTasks, FastAPI, Header, HTTPException, Request
import uvicorn

from mergelab.events import WebhookPayloadError, parse_webhook_event
from mergelab.observability import log_event, log_warning_event
from mergelab.webhooks import WebhookRegistrationManager


LOGGER = logging.getLogger("mergelab.webhook_server")
_MAX_BODY_BYTES = 1024 * 1024


def token_is_valid(expected: str | None, provided: str | None) -> bool:
    if not expected:
        return True
    if provided is None:
        return False
    return hmac.compare_digest(expected.encode("utf-8"), provided.encode("utf-8"))


def create_app(
    manager: WebhookRegistrationManager,
    *,
    secret: str | None,
    hook_path: str = "/gitlab/webhook",
) -> FastAPI:
    app = FastAPI(title="mergelab webhook endpoint")

    @app.get("/health")
    async def health() -> dict[str, str]:
        return {"status": "ok"}

    @app.post(hook_path)
    async def gitlab_webhook(
        request: Request,
        background_tasks: BackgroundTasks,
        x_gitlab_token: str | None = Header(default=None),
        x_gitlab_event: str | None = Header(default=None),
    ) -> dict[str, object]:
        if not token_is_valid(secret, x_gitlab_token):
            log_warning_event(LOGGER, "webhook_rejected", reason="invalid_token")
            raise HTTPException(status_code=401, detail="Invalid webhook token")

        body = await request.body()
        if len(body) > _MAX_BODY_BYTES:
            raise HTTPException(status_code=413, detail="Payload too large")
        try:
            payload = json.loads(body)
            event = parse_webhook_event(payload, event_header=x_gitlab_event)
        except (json.JSONDecodeError, UnicodeDecodeError, WebhookPayloadError) as exc:
            log_warning_event(LOGGER, "webhook_rejected", reason="invalid_payload", error=str(exc))
            raise HTTPException(status_code=400, detail="Invalid webhook payload") from exc

        matched = len(manager.registrations_for_project(event.project_id))
        if matched and event.kind != "unsupported":
            background_tasks.add_task(manager.dispatch, payload, event_header=x_gitlab_event)
        log_event(
            LOGGER,
            "webhook_received",
            project_id=event.project_id,
            kind=event.kind,
            matched_sources=matched,
        )
        return {"status": "accepted", "kind": event.kind, "sources": matched}

    return app


def run_webhook_server(app: FastAPI, *, host: str, port: int) -> None:
    log_event(LOGGER, "webhook_server_starting", host=host, port=port)
    uvicorn.run(app, host=host, port=port, log_level="warning")
