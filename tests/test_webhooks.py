import asyncio
import hashlib
import hmac
import json
import logging
from contextlib import asynccontextmanager

import httpx
import pytest

from conftest import NOW, TENANT
from dispatch_engine import db, webhooks
from dispatch_engine.config import settings
from dispatch_engine.models import Webhook
from dispatch_engine.webhooks import (
    RISK_SIGNAL_EVENT,
    SIGNATURE_HEADER,
    QueueFullError,
    RedisWebhookDispatcher,
    WebhookJob,
    WebhookWorker,
    deliver_webhook_event,
    publish_job,
    record_delivery,
    run_webhook_worker,
    sign_payload,
)


def _webhook(**overrides) -> Webhook:
    fields = {
        "tenant_id": TENANT,
        "url": "https://hooks.example.test/risk",
        "secret": "s3cret",
        "events": [RISK_SIGNAL_EVENT],
        "enabled": True,
        "fail_count": 0,
        "created_at": NOW,
    }
    fields.update(overrides)
    return Webhook(**fields)


def test_signature_is_hmac_sha256_hex() -> None:
    body = '{"severity": "critical"}'
    expected = hmac.new(b"s3cret", body.encode(), hashlib.sha256).hexdigest()
    assert sign_payload("s3cret", body) == expected


def test_job_fields_are_flat_strings() -> None:
    job = WebhookJob(tenant_id=TENANT, event=RISK_SIGNAL_EVENT, payload={"severity": "high"})

    fields = job.to_dict()

    assert all(isinstance(v, str) for v in fields.values())
    assert WebhookJob.from_dict(fields) == job


def test_repeated_failures_disable_subscription() -> None:
    webhook = _webhook(fail_count=9)

    record_delivery(webhook, False)
    assert (webhook.fail_count, webhook.enabled) == (10, True)

    record_delivery(webhook, False)
    assert (webhook.fail_count, webhook.enabled) == (11, False)


def test_success_resets_failures() -> None:
    webhook = _webhook(fail_count=4)

    record_delivery(webhook, True, now=NOW)

    assert webhook.fail_count == 0
    assert webhook.last_delivered_at == NOW


@pytest.mark.asyncio
async def test_delivery_posts_signed_body_to_subscribers(session) -> None:
    subscribed = _webhook()
    other_event = _webhook(url="https://hooks.example.test/tasks", events=["task_done"])
    disabled = _webhook(url="https://hooks.example.test/off", enabled=False)
    session.add_all([subscribed, other_event, disabled])
    await session.flush()

    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(204)

    payload = {"signalType": "stale_task", "severity": "critical", "message": "late", "agentId": None}
    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        delivered = await deliver_webhook_event(session, TENANT, RISK_SIGNAL_EVENT, payload, client=client)

    assert delivered == 1
    (request,) = seen
    assert str(request.url) == subscribed.url
    body = request.content.decode()
    assert json.loads(body) == payload
    assert request.headers[SIGNATURE_HEADER] == f"sha256={sign_payload('s3cret', body)}"
    assert subscribed.last_delivered_at is not None


@pytest.mark.asyncio
async def test_delivery_failure_is_counted(session) -> None:
    webhook = _webhook()
    session.add(webhook)
    await session.flush()

    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        delivered = await deliver_webhook_event(session, TENANT, RISK_SIGNAL_EVENT, {"x": 1}, client=client)

    assert delivered == 0
    assert webhook.fail_count == 1


# =============================================================================
# Stream publishing and the worker
# =============================================================================


class FakeStreams:
    """Just enough of the redis stream API for the publisher and the worker."""

    def __init__(self, batches: list[list[tuple[str, dict[str, str]]]] | None = None, length: int = 0) -> None:
        self.batches = list(batches or [])
        self.length = length
        self.added: list[tuple[str, dict[str, str]]] = []
        self.acked: list[str] = []
        self.reads = 0

    async def xgroup_create(self, stream, group, id="0", mkstream=False):
        return True

    async def xreadgroup(self, group, consumer, streams, count=10, block=0):
        self.reads += 1
        if not self.batches:
            return []
        (stream,) = streams
        return [(stream, self.batches.pop(0))]

    async def xadd(self, stream, fields):
        self.added.append((stream, dict(fields)))
        return f"9-{len(self.added)}"

    async def xack(self, stream, group, msg_id):
        self.acked.append(msg_id)
        return 1

    async def xlen(self, stream):
        return self.length


@pytest.fixture
def borrowed_session(session, monkeypatch):
    @asynccontextmanager
    async def _get_session():
        yield session

    monkeypatch.setattr(db, "get_session", _get_session)
    return session


def _job_fields(tenant_id: str = TENANT) -> dict[str, str]:
    return WebhookJob(tenant_id=tenant_id, event=RISK_SIGNAL_EVENT, payload={"severity": "high"}).to_dict()


@pytest.mark.asyncio
async def test_publish_refuses_full_stream(monkeypatch) -> None:
    redis = FakeStreams(length=settings.webhook_stream_max_depth)
    monkeypatch.setattr(webhooks, "get_redis_client", lambda: redis)

    with pytest.raises(QueueFullError):
        await publish_job(WebhookJob(tenant_id=TENANT, event=RISK_SIGNAL_EVENT, payload={}))
    assert redis.added == []

    redis.length = 0
    await publish_job(WebhookJob(tenant_id=TENANT, event=RISK_SIGNAL_EVENT, payload={"a": 1}))
    assert redis.added == [(settings.webhook_stream, _job_fields() | {"payload": '{"a": 1}'})]


@pytest.mark.asyncio
async def test_dispatcher_enqueue_returns_before_publishing(monkeypatch) -> None:
    release = asyncio.Event()
    published: list[WebhookJob] = []

    async def slow_publish(job, *, stream=None):
        await release.wait()
        published.append(job)
        return "1-0"

    monkeypatch.setattr(webhooks, "publish_job", slow_publish)
    dispatcher = RedisWebhookDispatcher()

    dispatcher.enqueue(TENANT, RISK_SIGNAL_EVENT, {"severity": "critical"})
    assert published == []

    release.set()
    await dispatcher.drain()
    assert [(j.tenant_id, j.payload) for j in published] == [(TENANT, {"severity": "critical"})]


@pytest.mark.asyncio
async def test_dispatcher_swallows_publish_failures(monkeypatch, caplog) -> None:
    async def full(job, *, stream=None):
        raise QueueFullError("stream at capacity")

    monkeypatch.setattr(webhooks, "publish_job", full)
    dispatcher = RedisWebhookDispatcher()

    with caplog.at_level(logging.WARNING, logger="dispatch_engine.webhooks"):
        dispatcher.enqueue(TENANT, RISK_SIGNAL_EVENT, {})
        await dispatcher.drain()

    assert "stream at capacity" in caplog.text


def test_dispatcher_without_loop_drops_event(caplog) -> None:
    with caplog.at_level(logging.WARNING, logger="dispatch_engine.webhooks"):
        RedisWebhookDispatcher().enqueue(TENANT, RISK_SIGNAL_EVENT, {})

    assert "No running event loop" in caplog.text


@pytest.mark.asyncio
async def test_worker_dead_letters_malformed_job_and_keeps_going(borrowed_session, monkeypatch) -> None:
    redis = FakeStreams(
        [[("1-0", {"tenant_id": TENANT, "event": RISK_SIGNAL_EVENT, "payload": "{not json"}), ("1-1", _job_fields())]]
    )
    monkeypatch.setattr(webhooks, "get_redis_client", lambda: redis)
    seen: list[tuple[str, str]] = []

    async def deliver(session, tenant_id, event, payload, *, client=None):
        seen.append((tenant_id, event))
        return 1

    monkeypatch.setattr(webhooks, "deliver_webhook_event", deliver)

    delivered = await run_webhook_worker(max_batches=1, block_ms=0)

    assert delivered == 1
    assert seen == [(TENANT, RISK_SIGNAL_EVENT)]
    assert redis.acked == ["1-0", "1-1"]
    ((stream, fields),) = redis.added
    assert stream == settings.webhook_dlq_stream
    assert fields["error"].startswith("malformed job")


@pytest.mark.asyncio
async def test_worker_requeues_failed_delivery_then_dead_letters(borrowed_session, monkeypatch) -> None:
    first_try = _job_fields()
    last_try = _job_fields() | {"retry_count": str(settings.webhook_max_attempts - 1)}
    redis = FakeStreams([[("2-0", first_try), ("2-1", last_try)]])
    monkeypatch.setattr(webhooks, "get_redis_client", lambda: redis)

    async def deliver(session, tenant_id, event, payload, *, client=None):
        raise RuntimeError("database unavailable")

    monkeypatch.setattr(webhooks, "deliver_webhook_event", deliver)

    delivered = await run_webhook_worker(max_batches=1, block_ms=0)

    assert delivered == 0
    assert redis.acked == ["2-0", "2-1"]
    assert redis.added == [
        (settings.webhook_stream, first_try | {"retry_count": "1"}),
        (settings.webhook_dlq_stream, last_try | {"error": "database unavailable"}),
    ]


@pytest.mark.asyncio
async def test_worker_delivers_through_the_database(borrowed_session, monkeypatch) -> None:
    borrowed_session.add(_webhook())
    await borrowed_session.flush()
    redis = FakeStreams([[("3-0", _job_fields())]])
    monkeypatch.setattr(webhooks, "get_redis_client", lambda: redis)

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200)

    worker = WebhookWorker()
    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        await worker.setup()
        assert await worker.handle("3-0", _job_fields(), client) is True

    assert redis.acked == ["3-0"]
    assert redis.added == []


@pytest.mark.asyncio
async def test_worker_stops_when_shutdown_requested(monkeypatch) -> None:
    redis = FakeStreams([[("4-0", _job_fields())]])
    monkeypatch.setattr(webhooks, "get_redis_client", lambda: redis)
    worker = WebhookWorker()
    worker.shutdown_requested = True

    assert await worker.run(max_batches=5, block_ms=0) == 0
    assert redis.reads == 0
