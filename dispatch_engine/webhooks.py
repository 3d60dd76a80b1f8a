"""Outbound webhook events: fire-and-forget enqueue, stream worker, signed delivery."""

from __future__ import annotations

import asyncio
import hashlib
import hmac
import json
import logging
import signal
from dataclasses import dataclass
from typing import Any, Protocol, cast

import httpx
from redis.exceptions import ResponseError
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from . import db
from .clock import resolve_now
from .config import settings
from .models import Webhook
from .redis_client import get_redis_client

logger = logging.getLogger(__name__)

RISK_SIGNAL_EVENT = "risk_signal"
SIGNATURE_HEADER = "X-CT-Signature"


class WebhookDispatcher(Protocol):
    """Fire-and-forget hand-off of an event to webhook delivery.

    ``enqueue`` must not raise and must not block on I/O.
    """

    def enqueue(self, tenant_id: str, event: str, payload: dict[str, Any]) -> None: ...


class QueueFullError(RuntimeError):
    """Raised when the webhook stream reaches capacity."""


@dataclass(frozen=True)
class WebhookJob:
    tenant_id: str
    event: str
    payload: dict[str, Any]
    schema_version: str = "1.0"

    def to_dict(self) -> dict[str, str]:
        return {
            "schema_version": self.schema_version,
            "tenant_id": self.tenant_id,
            "event": self.event,
            "payload": json.dumps(self.payload),
        }

    @classmethod
    def from_dict(cls, fields: dict[str, str]) -> WebhookJob:
        return cls(
            tenant_id=fields["tenant_id"],
            event=fields["event"],
            payload=json.loads(fields.get("payload") or "{}"),
            schema_version=fields.get("schema_version", "1.0"),
        )


async def publish_job(job: WebhookJob, *, stream: str | None = None) -> str:
    """XADD a webhook job, refusing when the stream is at capacity."""
    stream = stream or settings.webhook_stream
    redis = get_redis_client()
    length = await redis.xlen(stream)
    if length >= settings.webhook_stream_max_depth:
        raise QueueFullError(f"Stream {stream} at capacity ({length})")
    return await redis.xadd(stream, cast(dict[Any, Any], job.to_dict()))


class RedisWebhookDispatcher:
    """Schedules stream publication on the running loop and returns immediately."""

    def __init__(self, *, stream: str | None = None) -> None:
        self._stream = stream or settings.webhook_stream
        self._pending: set[asyncio.Task[None]] = set()

    def enqueue(self, tenant_id: str, event: str, payload: dict[str, Any]) -> None:
        job = WebhookJob(tenant_id=tenant_id, event=event, payload=payload)
        try:
            task = asyncio.get_running_loop().create_task(self._publish(job))
        except RuntimeError:
            logger.warning("No running event loop; dropped webhook event %s for %s", event, tenant_id)
            return
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _publish(self, job: WebhookJob) -> None:
        try:
            await publish_job(job, stream=self._stream)
        except Exception as exc:
            # Delivery is best-effort; the caller's transaction is unaffected.
            logger.warning("Webhook enqueue failed for %s/%s: %s", job.tenant_id, job.event, exc)

    async def drain(self) -> None:
        """Wait for scheduled publications (call before a short-lived process exits)."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)


# =============================================================================
# Delivery
# =============================================================================


def sign_payload(secret: str, body: str) -> str:
    return hmac.new(secret.encode(), body.encode(), hashlib.sha256).hexdigest()


async def list_webhooks(session: AsyncSession, tenant_id: str) -> list[Webhook]:
    result = await session.execute(
        select(Webhook).where(Webhook.tenant_id == tenant_id).order_by(Webhook.created_at.desc())
    )
    return list(result.scalars().all())


def record_delivery(webhook: Webhook, success: bool, *, now: int | None = None) -> None:
    """Update delivery bookkeeping; repeated failures disable the subscription."""
    if success:
        webhook.last_delivered_at = resolve_now(now)
        webhook.fail_count = 0
        return

    webhook.fail_count = (webhook.fail_count or 0) + 1
    if webhook.fail_count > settings.webhook_max_failures:
        webhook.enabled = False
        logger.warning("Webhook %s disabled after %d failures", webhook.id, webhook.fail_count)


async def deliver_webhook_event(
    session: AsyncSession,
    tenant_id: str,
    event: str,
    payload: dict[str, Any],
    *,
    client: httpx.AsyncClient | None = None,
) -> int:
    """POST ``payload`` to every enabled subscription for ``event``.

    Returns the number of successful deliveries.
    """
    webhooks = [w for w in await list_webhooks(session, tenant_id) if w.enabled and event in (w.events or [])]
    if not webhooks:
        return 0

    body = json.dumps(payload)
    owns_client = client is None
    client = client or httpx.AsyncClient(timeout=settings.webhook_timeout_seconds)
    delivered = 0
    try:
        for webhook in webhooks:
            headers = {
                "Content-Type": "application/json",
                SIGNATURE_HEADER: f"sha256={sign_payload(webhook.secret, body)}",
            }
            try:
                response = await client.post(webhook.url, content=body, headers=headers)
                ok = response.is_success
            except httpx.HTTPError as exc:
                logger.warning("Webhook %s delivery error: %s", webhook.id, exc)
                ok = False
            record_delivery(webhook, ok)
            delivered += int(ok)
    finally:
        if owns_client:
            await client.aclose()
    return delivered


# =============================================================================
# Worker
# =============================================================================


class WebhookWorker:
    """Consumes webhook jobs from the stream and delivers them.

    A job that cannot be decoded goes straight to the dead-letter stream. A job
    whose delivery raises is requeued with a bumped ``retry_count`` until
    ``webhook_max_attempts`` is reached, then dead-lettered. Either way the
    original message is acked so the group moves on.
    """

    def __init__(self, *, consumer: str = "worker-1", stream: str | None = None) -> None:
        self.consumer = consumer
        self.stream = stream or settings.webhook_stream
        self.group = settings.webhook_worker_group
        self.shutdown_requested = False

    async def setup(self) -> None:
        redis = get_redis_client()
        try:
            await redis.xgroup_create(self.stream, self.group, id="0", mkstream=True)
        except ResponseError as exc:
            if "BUSYGROUP" not in str(exc):
                raise

    def install_signal_handlers(self) -> None:
        def _handle_signal(signum: int, frame: object) -> None:
            logger.info("Signal %d received; stopping after the current batch", signum)
            self.shutdown_requested = True

        signal.signal(signal.SIGTERM, _handle_signal)
        signal.signal(signal.SIGINT, _handle_signal)

    async def _ack(self, msg_id: str) -> None:
        await get_redis_client().xack(self.stream, self.group, msg_id)

    async def _to_dlq(self, msg_id: str, fields: dict[str, str], error: str) -> None:
        payload = dict(fields)
        payload["error"] = error
        await get_redis_client().xadd(settings.webhook_dlq_stream, cast(dict[Any, Any], payload))
        await self._ack(msg_id)

    async def _requeue(self, msg_id: str, fields: dict[str, str], retry_count: int) -> None:
        payload = dict(fields)
        payload["retry_count"] = str(retry_count)
        await get_redis_client().xadd(self.stream, cast(dict[Any, Any], payload))
        await self._ack(msg_id)

    async def handle(self, msg_id: str, fields: dict[str, str], client: httpx.AsyncClient) -> bool:
        """Process one message. Returns True when it was delivered."""
        try:
            job = WebhookJob.from_dict(fields)
        except (KeyError, ValueError) as exc:
            logger.error("Malformed webhook job %s: %s", msg_id, exc)
            await self._to_dlq(msg_id, fields, f"malformed job: {exc}")
            return False

        try:
            async with db.get_session() as session:
                await deliver_webhook_event(session, job.tenant_id, job.event, job.payload, client=client)
        except Exception as exc:
            logger.exception("Webhook job %s (%s/%s) failed", msg_id, job.tenant_id, job.event)
            retry_count = int(fields.get("retry_count", "0")) + 1
            if retry_count >= settings.webhook_max_attempts:
                await self._to_dlq(msg_id, fields, str(exc))
            else:
                await self._requeue(msg_id, fields, retry_count)
            return False

        await self._ack(msg_id)
        return True

    async def run(self, *, max_batches: int | None = None, block_ms: int = 5000) -> int:
        """Read until shutdown (or ``max_batches`` reads). Returns jobs delivered."""
        await self.setup()
        redis = get_redis_client()

        delivered = 0
        batches = 0
        async with httpx.AsyncClient(timeout=settings.webhook_timeout_seconds) as client:
            while not self.shutdown_requested and (max_batches is None or batches < max_batches):
                batches += 1
                response = await redis.xreadgroup(
                    self.group, self.consumer, {self.stream: ">"}, count=10, block=block_ms
                )
                for _stream_name, messages in response or []:
                    for msg_id, fields in messages:
                        delivered += int(await self.handle(msg_id, fields, client))
        return delivered


async def run_webhook_worker(
    *,
    consumer: str = "worker-1",
    stream: str | None = None,
    max_batches: int | None = None,
    block_ms: int = 5000,
    handle_signals: bool = False,
) -> int:
    """Consume webhook jobs until stopped. Returns jobs delivered."""
    worker = WebhookWorker(consumer=consumer, stream=stream)
    if handle_signals:
        worker.install_signal_handlers()
    return await worker.run(max_batches=max_batches, block_ms=block_ms)
