"""
Assignment External Service Integrations
=========================================

External services for the orchestrator:
- Escalation policy YAML loader with watchdog hot-reload
- Notification sinks (notifications table, optional HTTP webhook)
- APScheduler wrapper that drives the periodic tick
"""

import asyncio
import threading
import time
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, Optional, Sequence

import httpx
import yaml
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from pydantic import ValidationError
from watchdog.events import FileSystemEventHandler
from watchdog.observers import Observer

from assignment.application.services import (
    IEscalationConfigProvider,
    INotificationSink,
    UnitOfWorkFactory,
)
from assignment.domain import EscalationPolicy, NotificationRecord
from config import settings
from core import ConfigurationException, NotificationDeliveryException
from shared.infrastructure.logging import get_logger

logger = get_logger(__name__)


# ========== Escalation policy ==========

class ConfigFileHandler(FileSystemEventHandler):
    """Watchdog event handler for escalation config file changes."""

    def __init__(self, config_manager: "EscalationConfigManager", config_path: Path):
        self.config_manager = config_manager
        self.config_path = config_path
        super().__init__()

    def on_modified(self, event):
        if event.is_directory:
            return
        if Path(event.src_path).resolve() == self.config_path.resolve():
            logger.info("Escalation config changed", extra={"path": event.src_path})
            self.config_manager.reload()


class EscalationConfigManager(IEscalationConfigProvider):
    """
    Thread-safe escalation policy holder with hot-reload support.

    The policy is validated once when loaded. An invalid file at startup
    raises ConfigurationException; an invalid file on reload is logged and
    the previous policy stays in force.
    """

    def __init__(self):
        self._config: Optional[EscalationPolicy] = None
        self._lock = threading.Lock()
        self._path: Optional[Path] = None
        self._observer = None

    def load(self, path: Path) -> EscalationPolicy:
        """Initial configuration load."""
        self._path = Path(path)
        config = self._load_from_file(self._path)
        with self._lock:
            self._config = config
        logger.info(
            "Escalation policy loaded",
            extra={"path": str(self._path), "levels": len(config.escalation_levels)}
        )
        return config

    @staticmethod
    def _load_from_file(path: Path) -> EscalationPolicy:
        if not path.exists():
            logger.warning("Escalation config not found, using defaults", extra={"path": str(path)})
            return EscalationPolicy()

        try:
            with open(path, "r") as f:
                data = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            raise ConfigurationException(
                f"Cannot read escalation config {path}: {e}",
                details={"path": str(path)}
            ) from e

        if not isinstance(data, dict):
            raise ConfigurationException(
                f"Escalation config {path} must be a mapping",
                details={"path": str(path)}
            )

        try:
            return EscalationPolicy(**data)
        except ValidationError as e:
            raise ConfigurationException(
                f"Invalid escalation config {path}",
                details={"path": str(path), "errors": e.errors(include_url=False)}
            ) from e

    def reload(self) -> bool:
        """Reload configuration from file, keeping the old policy on failure."""
        if self._path is None:
            return False

        try:
            new_config = self._load_from_file(self._path)
        except ConfigurationException as e:
            logger.error(
                "Escalation config reload rejected, keeping previous policy",
                extra={"error": e.message, **e.details}
            )
            return False

        with self._lock:
            self._config = new_config
        logger.info("Escalation config reloaded")
        return True

    def start_watching(self) -> None:
        """
        Start watching the configuration file for changes.

        Skipped when the file does not exist or inotify is unavailable.
        """
        if self._path is None:
            raise RuntimeError("Config not loaded. Call load() first.")

        if not self._path.exists():
            logger.info(
                "Escalation config file missing, not watching",
                extra={"path": str(self._path)}
            )
            return

        try:
            self._observer = Observer()
            self._observer.schedule(
                ConfigFileHandler(self, self._path),
                str(self._path.resolve().parent),
                recursive=False
            )
            self._observer.start()
            logger.info("Watching escalation config", extra={"path": str(self._path)})
        except OSError as e:
            logger.warning(f"File watching not available, using static config: {e}")
            self._observer = None

    def stop_watching(self) -> None:
        """Stop watching (safe to call even if not watching)."""
        if self._observer is not None:
            self._observer.stop()
            self._observer.join(timeout=5)
            self._observer = None

    def get_config(self) -> EscalationPolicy:
        with self._lock:
            if self._config is None:
                raise RuntimeError("Escalation configuration not loaded")
            return self._config


class StaticConfigProvider(IEscalationConfigProvider):
    """Fixed policy, for scripts and tests."""

    def __init__(self, policy: Optional[EscalationPolicy] = None):
        self._policy = policy or EscalationPolicy()

    def get_config(self) -> EscalationPolicy:
        return self._policy


# ========== Notification sinks ==========

class DatabaseNotificationSink(INotificationSink):
    """Writes records to the notifications table in their own transaction."""

    def __init__(self, uow_factory: UnitOfWorkFactory):
        self._uow_factory = uow_factory

    async def send(self, records: Sequence[NotificationRecord]) -> None:
        async with self._uow_factory() as uow:
            await uow.notifications.add_many(records)
            await uow.commit()
        logger.debug("Notifications stored", extra={"count": len(records)})


class CircuitState:
    """Circuit breaker states."""
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """
    Circuit breaker for preventing cascade failures.

    States:
    - CLOSED: Normal operation, requests pass through
    - OPEN: After N failures, reject all requests for M seconds
    - HALF_OPEN: After timeout, allow one test request
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        recovery_timeout: float = 60.0,
        clock: Callable[[], float] = time.monotonic
    ):
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self._clock = clock
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._opened_at: Optional[float] = None

    @property
    def state(self) -> str:
        if self._state == CircuitState.OPEN and self._opened_at is not None:
            if self._clock() - self._opened_at >= self.recovery_timeout:
                self._state = CircuitState.HALF_OPEN
        return self._state

    def allow_request(self) -> bool:
        return self.state in (CircuitState.CLOSED, CircuitState.HALF_OPEN)

    def record_success(self) -> None:
        self._failure_count = 0
        self._opened_at = None
        self._state = CircuitState.CLOSED

    def record_failure(self) -> None:
        self._failure_count += 1
        if self._state == CircuitState.HALF_OPEN or self._failure_count >= self.failure_threshold:
            self._state = CircuitState.OPEN
            self._opened_at = self._clock()
            logger.warning(
                "Circuit breaker opened",
                extra={
                    "failure_count": self._failure_count,
                    "recovery_timeout": self.recovery_timeout
                }
            )


class WebhookNotificationSink(INotificationSink):
    """
    Mirrors notification records to an HTTP webhook.

    Retries with exponential backoff, behind a circuit breaker.
    """

    def __init__(
        self,
        webhook_url: str,
        timeout_seconds: float = settings.notification_timeout_seconds,
        max_retries: int = 3,
        backoff_base: float = 1.0,
        circuit_breaker: Optional[CircuitBreaker] = None,
        http_client: Optional[httpx.AsyncClient] = None
    ):
        self._webhook_url = webhook_url
        self._timeout = timeout_seconds
        self._max_retries = max_retries
        self._backoff_base = backoff_base
        self._circuit_breaker = circuit_breaker or CircuitBreaker()
        self._http_client = http_client

    async def _get_client(self) -> httpx.AsyncClient:
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=self._timeout)
        return self._http_client

    @staticmethod
    def _build_payload(records: Sequence[NotificationRecord]) -> Dict[str, Any]:
        return {
            "notifications": [
                {
                    "user_id": record.recipient_id,
                    "title": record.title,
                    "message": record.message,
                    "type": record.type.value,
                    "action_url": record.action_url,
                    "metadata": record.metadata,
                    "created_at": record.created_at.isoformat(),
                }
                for record in records
            ]
        }

    async def send(self, records: Sequence[NotificationRecord]) -> None:
        if not self._circuit_breaker.allow_request():
            raise NotificationDeliveryException(
                "Circuit breaker open, webhook skipped",
                details={"records": len(records)}
            )

        payload = self._build_payload(records)
        last_error = None

        for attempt in range(self._max_retries):
            try:
                client = await self._get_client()
                response = await client.post(self._webhook_url, json=payload)
                if response.is_success:
                    self._circuit_breaker.record_success()
                    logger.info(
                        "Webhook notification sent",
                        extra={"records": len(records), "attempt": attempt + 1}
                    )
                    return
                last_error = f"HTTP {response.status_code}"
                logger.warning(
                    "Webhook returned error status",
                    extra={"status_code": response.status_code, "attempt": attempt + 1}
                )
            except httpx.HTTPError as e:
                last_error = str(e)
                logger.warning(
                    "Webhook request failed",
                    extra={"error": str(e), "attempt": attempt + 1}
                )

            if attempt < self._max_retries - 1:
                await asyncio.sleep(self._backoff_base * (2 ** attempt))

        self._circuit_breaker.record_failure()
        raise NotificationDeliveryException(
            f"Webhook delivery failed after {self._max_retries} attempts: {last_error}",
            details={"records": len(records)}
        )

    async def close(self) -> None:
        if self._http_client:
            await self._http_client.aclose()
            self._http_client = None


# ========== Scheduler ==========

class OrchestratorScheduler:
    """
    Wrapper for APScheduler driving the orchestration tick.

    max_instances=1 keeps the scheduler from starting a tick while the
    previous one is still running.
    """

    def __init__(self, interval_seconds: int = 60):
        self.interval_seconds = interval_seconds
        self._scheduler: Optional[AsyncIOScheduler] = None
        self._running = False

    async def start(self, job_func: Callable[[], Awaitable[Any]]) -> None:
        """Start the scheduler with the given job function."""
        if self._running:
            logger.warning("Orchestrator scheduler already running")
            return

        self._scheduler = AsyncIOScheduler()
        self._scheduler.add_job(
            job_func,
            "interval",
            seconds=self.interval_seconds,
            id="assignment_tick",
            name="Assignment Orchestration Tick",
            misfire_grace_time=self.interval_seconds,
            max_instances=1,
            coalesce=True,
            replace_existing=True
        )
        self._scheduler.start()
        self._running = True

        logger.info(
            "Orchestrator scheduler started",
            extra={"interval_seconds": self.interval_seconds}
        )

    async def stop(self) -> None:
        """Stop the scheduler gracefully."""
        if not self._running:
            return

        if self._scheduler:
            self._scheduler.shutdown(wait=False)

        self._running = False
        logger.info("Orchestrator scheduler stopped")

    @property
    def is_running(self) -> bool:
        return self._running
