"""Worker pool and per-queue job handlers."""

import asyncio
import inspect
from typing import Any, Awaitable, Callable, Optional

import httpx

from switchboard.config import settings
from switchboard.logging_config import get_logger
from switchboard.services.alert_service import send_alert
from switchboard.services.errors import AgentUnavailable, RateLimited, SwitchboardError
from switchboard.services.conversation_service import ConversationStore
from switchboard.services.job_queue import Job, JobQueueManager, QueueName, StaleClaimError
from switchboard.services.message_dispatcher import ChannelInfo, MessageDispatcher, load_channel
from switchboard.services.state_machine import InvalidTransitionError
from switchboard.services.telegram_service import TelegramService
from switchboard.services.whatsapp_service import WhatsAppService, is_retryable_status

logger = get_logger("job_workers")
analytics_logger = get_logger("analytics")


class NonRetryableJobError(Exception):
    """Raised by a handler when retrying the job cannot succeed."""


class JobHandler:
    queue_name: QueueName

    async def process(self, job: Job) -> dict:
        raise NotImplementedError


class WorkerPool:
    def __init__(
        self,
        manager: JobQueueManager,
        handlers: list[JobHandler],
        *,
        poll_interval: float = 0.5,
        job_timeout: float = 120.0,
        stalled_after: float = 600.0,
        sweep_interval: float = 60.0,
        conversations: Optional[ConversationStore] = None,
    ):
        self.manager = manager
        self.handlers = handlers
        self.poll_interval = poll_interval
        self.job_timeout = job_timeout
        self.stalled_after = stalled_after
        self.sweep_interval = sweep_interval
        self.conversations = conversations
        self._tasks: list[asyncio.Task] = []

    @property
    def running(self) -> bool:
        return any(not task.done() for task in self._tasks)

    def start(self) -> None:
        if self.running:
            return
        for handler in self.handlers:
            concurrency = max(self.manager.policy(handler.queue_name).concurrency, 1)
            for index in range(concurrency):
                self._tasks.append(asyncio.create_task(self._worker_loop(handler, index)))
            logger.info(
                f"Worker started for queue: {handler.queue_name.value}",
                extra={"context": {"concurrency": concurrency}},
            )
        self._tasks.append(asyncio.create_task(self._sweep_loop()))

    async def stop(self) -> None:
        tasks, self._tasks = self._tasks, []
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        if tasks:
            logger.info("Worker pool stopped", extra={"context": {"tasks": len(tasks)}})

    async def run_once(self, handler: JobHandler) -> Optional[Job]:
        """Claim and process one job. Returns the job's state afterwards, or None if idle."""
        job = self.manager.claim(handler.queue_name)
        if job is None:
            return None

        try:
            result = await asyncio.wait_for(handler.process(job), timeout=self.job_timeout)
        except NonRetryableJobError as exc:
            return self._fail(job, str(exc) or "Non-retryable error", retryable=False)
        except asyncio.TimeoutError:
            return self._fail(job, f"Job timed out after {self.job_timeout:g}s", retryable=True)
        except asyncio.CancelledError:
            self._release(job)
            raise
        except Exception as exc:
            logger.exception(
                f"Job handler failed in {job.queue_name}",
                extra={"context": {"job_id": job.job_id, "attempts_made": job.attempts_made}},
            )
            return self._fail(job, str(exc) or exc.__class__.__name__, retryable=True)

        try:
            return self.manager.complete(job.job_id, result, claim_token=job.claim_token)
        except (InvalidTransitionError, StaleClaimError, KeyError) as exc:
            # Released as stalled, and possibly claimed again, while the handler was running.
            logger.warning(
                "Job result discarded",
                extra={"context": {"job_id": job.job_id, "error": str(exc)}},
            )
            return self.manager.get_job(job.job_id)

    def _fail(self, job: Job, reason: str, retryable: bool) -> Optional[Job]:
        try:
            return self.manager.fail(job.job_id, reason, retryable=retryable, claim_token=job.claim_token)
        except (InvalidTransitionError, StaleClaimError, KeyError) as exc:
            logger.warning(
                "Job failure discarded",
                extra={"context": {"job_id": job.job_id, "error": str(exc)}},
            )
            return self.manager.get_job(job.job_id)

    def _release(self, job: Job) -> None:
        try:
            self.manager.release(job.job_id, claim_token=job.claim_token)
        except (InvalidTransitionError, StaleClaimError, KeyError) as exc:
            logger.warning(
                "Job release discarded",
                extra={"context": {"job_id": job.job_id, "error": str(exc)}},
            )

    async def _worker_loop(self, handler: JobHandler, index: int) -> None:
        while True:
            try:
                job = await self.run_once(handler)
                if job is None:
                    await asyncio.sleep(self.poll_interval)
            except asyncio.CancelledError:
                break
            except Exception as exc:
                logger.error(
                    "Worker loop failed",
                    extra={"context": {"queue": handler.queue_name.value, "worker": index, "error": str(exc)}},
                )
                await asyncio.sleep(self.poll_interval)

    def sweep(self) -> None:
        self.manager.release_stalled(self.stalled_after)
        if self.conversations is not None:
            purged = self.conversations.purge_expired()
            if purged:
                logger.info("Expired conversations purged", extra={"context": {"count": purged}})

    async def _sweep_loop(self) -> None:
        while True:
            try:
                await asyncio.sleep(self.sweep_interval)
                self.sweep()
            except asyncio.CancelledError:
                break
            except Exception as exc:
                logger.error("Sweep failed", extra={"context": {"error": str(exc)}})


async def _maybe_await(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


def _require(payload: dict, *keys: str) -> None:
    missing = [key for key in keys if not payload.get(key)]
    if missing:
        raise NonRetryableJobError(f"Missing payload fields: {', '.join(missing)}")


class MessageProcessingHandler(JobHandler):
    """Runs channel-originated inbound messages through the dispatcher."""

    queue_name = QueueName.MESSAGE_PROCESSING

    def __init__(
        self,
        dispatcher: MessageDispatcher,
        telegram_factory: Callable[[str], TelegramService] = TelegramService,
    ):
        self.dispatcher = dispatcher
        self.telegram_factory = telegram_factory

    async def process(self, job: Job) -> dict:
        payload = job.payload
        _require(payload, "channel_id", "user_id", "content")
        channel_type = payload.get("channel_type", "whatsapp")

        try:
            reply = await self.dispatcher.dispatch(
                f"{channel_type}:{payload['user_id']}",
                payload["user_id"],
                payload["channel_id"],
                payload["content"],
                payload.get("message_id"),
            )
        except (AgentUnavailable, RateLimited):
            raise
        except SwitchboardError as exc:
            raise NonRetryableJobError(f"{exc.code}: {exc.message}") from exc

        if reply is None:
            return {"skipped": True, "reason": "duplicate in flight"}

        if channel_type == "telegram":
            await self._reply_via_telegram(payload, reply.content)

        return {"replied": True, "model": reply.model, "message_id": payload.get("message_id")}

    async def _reply_via_telegram(self, payload: dict, text: str) -> None:
        channel = await asyncio.to_thread(self.dispatcher.channel_loader, payload["channel_id"])
        token = (channel.config.get("bot_token") if channel else None) or settings.telegram_bot_token
        if not token:
            raise NonRetryableJobError("Telegram bot token not configured")
        response = await self.telegram_factory(token).send_message(
            payload.get("chat_id") or payload["user_id"],
            text,
            parse_mode=None,
        )
        if not response.get("ok"):
            error = response.get("description") or response.get("error") or "Telegram send failed"
            if response.get("retryable"):
                raise RuntimeError(error)
            raise NonRetryableJobError(error)


class WhatsAppSendingHandler(JobHandler):
    queue_name = QueueName.WHATSAPP_SENDING

    def __init__(
        self,
        channel_loader: Callable[[str], Optional[ChannelInfo]] = load_channel,
        service_factory: Callable[[dict], WhatsAppService] = WhatsAppService,
    ):
        self.channel_loader = channel_loader
        self.service_factory = service_factory

    async def process(self, job: Job) -> dict:
        payload = job.payload
        _require(payload, "channel_id", "to", "text")
        channel = await asyncio.to_thread(self.channel_loader, payload["channel_id"])
        if channel is None:
            raise NonRetryableJobError(f"Channel not found: {payload['channel_id']}")

        result = await self.service_factory(channel.config).send_text(
            payload["to"], payload["text"], reference_id=payload.get("conversation_id")
        )
        if not result.ok:
            if result.retryable:
                raise RuntimeError(result.error)
            raise NonRetryableJobError(f"Non-retryable error: {result.error}")

        return {"success": True, "to": payload["to"], "attempt": job.attempts_made}


def normalize_inbound(channel_type: str, body: dict) -> list[dict]:
    """Extract text messages from a raw provider webhook.

    Returns ``[{"user_id", "chat_id", "content", "message_id"}]``; unsupported
    events and our own outbound echoes yield nothing.
    """
    messages = []
    if channel_type == "telegram":
        message = body.get("message") or body.get("edited_message") or {}
        text = message.get("text")
        chat = message.get("chat") or {}
        sender = message.get("from") or {}
        if text and chat.get("id") is not None:
            messages.append(
                {
                    "user_id": str(sender.get("id") or chat["id"]),
                    "chat_id": str(chat["id"]),
                    "content": text,
                    "message_id": str(message.get("message_id")) if message.get("message_id") else None,
                }
            )
        return messages

    # UltraMsg
    data = body.get("data")
    if isinstance(data, dict) and data.get("body") and not data.get("fromMe"):
        sender = str(data.get("from", "")).removesuffix("@c.us")
        if sender:
            messages.append({"user_id": sender, "chat_id": sender, "content": data["body"], "message_id": data.get("id")})
        return messages

    # Twilio (form fields)
    if body.get("Body") and body.get("From"):
        sender = str(body["From"]).removeprefix("whatsapp:")
        messages.append({"user_id": sender, "chat_id": sender, "content": body["Body"], "message_id": body.get("MessageSid")})
        return messages

    # 360dialog / WhatsApp Cloud API
    raw_messages = body.get("messages")
    if raw_messages is None:
        raw_messages = []
        for entry in body.get("entry") or []:
            for change in entry.get("changes") or []:
                raw_messages.extend((change.get("value") or {}).get("messages") or [])
    for raw in raw_messages:
        text = (raw.get("text") or {}).get("body")
        if raw.get("type", "text") == "text" and text and raw.get("from"):
            messages.append({"user_id": raw["from"], "chat_id": raw["from"], "content": text, "message_id": raw.get("id")})
    return messages


class WebhookProcessingHandler(JobHandler):
    queue_name = QueueName.WEBHOOK_PROCESSING

    def __init__(
        self,
        manager: JobQueueManager,
        timeout_seconds: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.manager = manager
        self.timeout_seconds = timeout_seconds
        self._transport = transport

    async def process(self, job: Job) -> dict:
        direction = job.payload.get("direction", "inbound")
        if direction == "inbound":
            return self._process_inbound(job)
        if direction == "outbound":
            return await self._process_outbound(job)
        raise NonRetryableJobError(f"Unknown webhook direction: {direction}")

    def _process_inbound(self, job: Job) -> dict:
        payload = job.payload
        _require(payload, "channel_id")
        channel_type = payload.get("channel_type", "whatsapp")
        messages = normalize_inbound(channel_type, payload.get("body") or {})
        if not messages:
            logger.info("Inbound webhook had no text messages", extra={"context": {"job_id": job.job_id}})

        job_ids = [
            self.manager.enqueue(
                QueueName.MESSAGE_PROCESSING,
                {"channel_id": payload["channel_id"], "channel_type": channel_type, **message},
                name="inbound",
            )
            for message in messages
        ]
        return {"enqueued": job_ids}

    async def _process_outbound(self, job: Job) -> dict:
        payload = job.payload
        _require(payload, "url")
        method = (payload.get("method") or "POST").upper()
        async with httpx.AsyncClient(timeout=self.timeout_seconds, transport=self._transport) as client:
            response = await client.request(
                method,
                payload["url"],
                json=payload.get("body") or {},
                headers=payload.get("headers") or {},
            )

        if response.status_code >= 400:
            message = f"Webhook returned {response.status_code}: {response.text[:200]}"
            if is_retryable_status(response.status_code):
                raise RuntimeError(message)
            raise NonRetryableJobError(message)

        logger.info(
            "Outbound webhook delivered",
            extra={"context": {"job_id": job.job_id, "url": payload["url"], "status": response.status_code}},
        )
        return {"status": response.status_code}


DocumentProcessor = Callable[[str, str], Awaitable[dict]]


class DocumentProcessingHandler(JobHandler):
    queue_name = QueueName.DOCUMENT_PROCESSING

    def __init__(self, process_document: Optional[DocumentProcessor] = None):
        self.process_document = process_document

    async def process(self, job: Job) -> dict:
        if self.process_document is None:
            raise NonRetryableJobError("Document processing function not configured")
        _require(job.payload, "document_id", "knowledge_base_id")
        result = await _maybe_await(
            self.process_document(job.payload["document_id"], job.payload["knowledge_base_id"])
        )
        return {"document_id": job.payload["document_id"], "result": result}


EmailSender = Callable[[str, str, str], Awaitable[Any]]


class EmailSendingHandler(JobHandler):
    queue_name = QueueName.EMAIL_SENDING

    def __init__(self, send_email: Optional[EmailSender] = None):
        self.send_email = send_email

    async def process(self, job: Job) -> dict:
        if self.send_email is None:
            raise NonRetryableJobError("Email sender not configured")
        _require(job.payload, "to", "subject")
        await _maybe_await(
            self.send_email(job.payload["to"], job.payload["subject"], job.payload.get("body") or "")
        )
        return {"sent": True, "to": job.payload["to"]}


class AnalyticsHandler(JobHandler):
    queue_name = QueueName.ANALYTICS

    async def process(self, job: Job) -> dict:
        event = job.payload.get("event") or job.name
        analytics_logger.info(
            f"Analytics event: {event}",
            extra={"context": {**job.payload, "job_id": job.job_id}},
        )
        return {"recorded": True, "event": event}


class NotificationsHandler(JobHandler):
    queue_name = QueueName.NOTIFICATIONS

    def __init__(self, telegram: Optional[TelegramService] = None):
        self.telegram = telegram

    async def process(self, job: Job) -> dict:
        _require(job.payload, "message")
        response = await send_alert(
            job.payload.get("level", "INFO"),
            job.payload["message"],
            job.payload.get("context"),
            telegram=self.telegram,
        )
        if not response.get("ok"):
            error = response.get("description") or response.get("error") or "Notification not sent"
            if response.get("retryable"):
                raise RuntimeError(error)
            raise NonRetryableJobError(error)
        return {"sent": True}


def build_default_handlers(
    manager: JobQueueManager,
    dispatcher: MessageDispatcher,
    *,
    process_document: Optional[DocumentProcessor] = None,
    send_email: Optional[EmailSender] = None,
) -> list[JobHandler]:
    return [
        MessageProcessingHandler(dispatcher),
        WhatsAppSendingHandler(channel_loader=dispatcher.channel_loader),
        WebhookProcessingHandler(manager),
        DocumentProcessingHandler(process_document),
        EmailSendingHandler(send_email),
        AnalyticsHandler(),
        NotificationsHandler(),
    ]
