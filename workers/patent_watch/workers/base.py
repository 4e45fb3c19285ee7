"""Base worker class for all patent-watch workers."""

import asyncio
import json
from typing import Any, Callable, Dict, Optional, Type
from abc import ABC, abstractmethod

import nats
import structlog
from pydantic import BaseModel, ValidationError

from ..utils.config import Settings
from ..utils.error_tracking import capture_exception
from ..utils.observability import metrics, trace_operation
from ..utils.security import JWTManager, require_user_id

logger = structlog.get_logger(__name__)


class BaseWorker(ABC):
    """Base class for NATS workers.

    Subclasses set ``subject`` and ``request_model`` and implement
    ``process_message``. Results go to ``<subject>.complete`` (or the message's
    reply inbox) and failures to ``<subject>.error``.
    """

    subject: str = ""
    request_model: Type[BaseModel] = BaseModel

    def __init__(self, settings: Settings):
        self.settings = settings
        self.nats_client: Optional[nats.NATS] = None
        self.running = False
        self.subscriptions = []
        self.jwt_manager: Optional[JWTManager] = None

    async def connect(self):
        """Connect to NATS and other services."""
        try:
            self.nats_client = await nats.connect(
                servers=[self.settings.nats_url],
                reconnect_time_wait=3,
                max_reconnect_attempts=5
            )
            logger.info("Connected to NATS", servers=self.settings.nats_url)
        except Exception as e:
            logger.error("Failed to connect to NATS", error=str(e))
            raise

    async def disconnect(self):
        """Disconnect from NATS and other services."""
        try:
            if self.nats_client:
                await self.nats_client.close()
                logger.info("Disconnected from NATS")
        except Exception as e:
            logger.error("Error disconnecting from NATS", error=str(e))

    async def subscribe(self, subject: str, handler: Callable):
        """Subscribe to a NATS subject."""
        try:
            subscription = await self.nats_client.subscribe(subject, cb=handler)
            self.subscriptions.append(subscription)
            logger.info("Subscribed to subject", subject=subject)
        except Exception as e:
            logger.error("Failed to subscribe", subject=subject, error=str(e))
            raise

    async def publish(self, subject: str, data: Dict[str, Any]):
        """Publish a JSON message to a NATS subject."""
        try:
            await self.nats_client.publish(subject, json.dumps(data, default=str).encode())
            logger.debug("Published message", subject=subject)
        except Exception as e:
            logger.error("Failed to publish message", subject=subject, error=str(e))
            raise

    def authenticate(self, token: Optional[str]) -> str:
        """Resolve the user a request acts for from its bearer token."""
        if self.jwt_manager is None:
            self.jwt_manager = JWTManager(self.settings.require("jwt_secret"))
        return require_user_id(token, self.jwt_manager)

    async def handle(self, msg):
        """Decode, process and answer one NATS message."""
        worker_type = type(self).__name__
        try:
            request = self.request_model.model_validate(json.loads(msg.data))
        except (ValueError, ValidationError) as e:
            logger.warning("Rejected malformed message", subject=msg.subject, error=str(e))
            metrics.worker_jobs_total.labels(worker_type=worker_type, job_type=self.subject, status="rejected").inc()
            await self.publish(f"{self.subject}.error", {"error": "Malformed request"})
            return

        try:
            with metrics.worker_job_duration_seconds.labels(worker_type=worker_type, job_type=self.subject).time():
                async with trace_operation(f"{worker_type}.process_message", {"subject": msg.subject}):
                    result = await self.process_message(request)
        except Exception as e:
            logger.error("Message processing failed", subject=msg.subject, error=str(e))
            capture_exception(e, {"worker": worker_type, "subject": msg.subject})
            metrics.worker_jobs_total.labels(worker_type=worker_type, job_type=self.subject, status="error").inc()
            await self.publish(f"{self.subject}.error", {"error": str(e), "error_type": type(e).__name__})
            return

        metrics.worker_jobs_total.labels(worker_type=worker_type, job_type=self.subject, status="success").inc()
        payload = result.model_dump(mode="json")
        if msg.reply:
            await self.publish(msg.reply, payload)
        else:
            await self.publish(f"{self.subject}.complete", payload)

    async def start(self):
        """Start the worker."""
        try:
            await self.connect()
            await self.subscribe(self.subject, self.handle)
            self.running = True
            logger.info("Worker started", subject=self.subject)
        except Exception as e:
            logger.error("Failed to start worker", error=str(e))
            raise

    async def stop(self):
        """Stop the worker."""
        try:
            self.running = False

            for subscription in self.subscriptions:
                await subscription.unsubscribe()

            await self.disconnect()
            logger.info("Worker stopped")
        except Exception as e:
            logger.error("Error stopping worker", error=str(e))

    @abstractmethod
    async def process_message(self, message: BaseModel) -> BaseModel:
        """Process a message. Must be implemented by subclasses."""

    async def run(self):
        """Run the worker indefinitely."""
        try:
            await self.start()

            while self.running:
                await asyncio.sleep(1)

        except asyncio.CancelledError:
            logger.info("Worker cancelled")
        finally:
            await self.stop()
