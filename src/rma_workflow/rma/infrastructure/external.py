"""
RMA External Service Integrations
==================================

External services for the RMA workflow:
- YAML rules file with hot reload (watchdog)
- Webhook notifier for the e-mail/SMS gateway (httpx)
- APScheduler job driving the SLA sweeper
"""

import asyncio
import threading
import time
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, Optional

import httpx
import yaml
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from pydantic import ValidationError
from watchdog.events import FileSystemEventHandler
from watchdog.observers import Observer

from rma_workflow.core import ConfigurationException, NotifierException
from rma_workflow.rma.application.services import INotifier, IRulesProvider
from rma_workflow.rma.domain import WorkflowEvent, WorkflowRules
from rma_workflow.shared.infrastructure.logging import get_logger

logger = get_logger(__name__)


# ========== Workflow Rules ==========

class RulesFileHandler(FileSystemEventHandler):
    """Watchdog event handler for rules file changes."""

    def __init__(self, manager: "RulesConfigManager", config_path: Path):
        self.manager = manager
        self.config_path = config_path
        super().__init__()

    def on_modified(self, event):
        if event.is_directory:
            return
        if Path(event.src_path).resolve() == self.config_path.resolve():
            logger.info("Rules file changed", extra={"path": str(event.src_path)})
            self.manager.reload()

    on_created = on_modified


class RulesConfigManager(IRulesProvider):
    """
    Thread-safe workflow rules provider with hot reload.

    Readers always get a complete snapshot: a reload either swaps in a fully
    validated ``WorkflowRules`` or leaves the previous one in place.
    """

    def __init__(self):
        self._rules: Optional[WorkflowRules] = None
        self._lock = threading.Lock()
        self._path: Optional[Path] = None
        self._observer = None

    def load(self, path: Path) -> WorkflowRules:
        """
        Initial rules load.

        Raises:
            ConfigurationException: file exists but is invalid
        """
        self._path = Path(path)
        rules = self._load_from_file(self._path)
        with self._lock:
            self._rules = rules
        logger.info(
            "Workflow rules loaded",
            extra={"path": str(self._path), "assignment_rules": len(rules.assignment_rules)}
        )
        return rules

    @staticmethod
    def parse(data: Dict[str, Any]) -> WorkflowRules:
        """
        Validate raw rules data.

        Raises:
            ConfigurationException: unknown stage/priority, non-positive hours,
                or a malformed assignment rule
        """
        if not isinstance(data, dict):
            raise ConfigurationException("Rules file must contain a mapping")
        try:
            return WorkflowRules(**data)
        except ValidationError as e:
            raise ConfigurationException(
                "Invalid workflow rules",
                {"errors": [err["msg"] for err in e.errors()]}
            ) from e

    def _load_from_file(self, path: Path) -> WorkflowRules:
        if not path.exists():
            logger.warning("Rules file not found, using defaults", extra={"path": str(path)})
            return WorkflowRules()

        try:
            with open(path, "r") as f:
                data = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            raise ConfigurationException(f"Cannot read rules file {path}", {"error": str(e)}) from e

        return self.parse(data)

    def reload(self) -> bool:
        """Reload from file; a bad file keeps the current snapshot."""
        if self._path is None:
            return False

        try:
            rules = self._load_from_file(self._path)
        except ConfigurationException as e:
            logger.error(
                "Rules reload failed, keeping previous rules",
                extra={"path": str(self._path), "error": e.message, "details": e.details}
            )
            return False

        with self._lock:
            self._rules = rules
        logger.info("Workflow rules reloaded", extra={"path": str(self._path)})
        return True

    def get_rules(self) -> WorkflowRules:
        with self._lock:
            if self._rules is None:
                raise ConfigurationException("Workflow rules not loaded")
            return self._rules

    def start_watching(self) -> None:
        """Watch the rules file's directory; no-op when the file is absent."""
        if self._path is None:
            raise RuntimeError("Rules not loaded. Call load() first.")

        if not self._path.exists():
            logger.info(
                "Rules file doesn't exist, skipping file watch",
                extra={"path": str(self._path)}
            )
            return

        try:
            self._observer = Observer()
            self._observer.schedule(
                RulesFileHandler(self, self._path),
                str(self._path.resolve().parent),
                recursive=False
            )
            self._observer.start()
            logger.info("Started watching rules file", extra={"path": str(self._path)})
        except OSError as e:
            logger.warning("File watching not available, using static rules", extra={"error": str(e)})
            self._observer = None

    def stop_watching(self) -> None:
        """Stop watching (safe to call even if not watching)."""
        if self._observer is not None:
            self._observer.stop()
            self._observer.join(timeout=5)
            self._observer = None


# ========== Notifier ==========

class CircuitState:
    """Circuit breaker states."""
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """
    Stops calling the gateway after repeated failures.

    CLOSED passes requests, OPEN rejects them for ``recovery_timeout``
    seconds, HALF_OPEN lets one probe through.
    """

    def __init__(self, failure_threshold: int = 5, recovery_timeout: float = 60.0):
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._last_failure_time: Optional[float] = None

    @property
    def state(self) -> str:
        if self._state == CircuitState.OPEN and self._last_failure_time is not None:
            if time.monotonic() - self._last_failure_time >= self.recovery_timeout:
                self._state = CircuitState.HALF_OPEN
        return self._state

    def allow_request(self) -> bool:
        return self.state in (CircuitState.CLOSED, CircuitState.HALF_OPEN)

    def record_success(self) -> None:
        self._failure_count = 0
        self._state = CircuitState.CLOSED

    def record_failure(self) -> None:
        self._failure_count += 1
        self._last_failure_time = time.monotonic()

        if self._failure_count >= self.failure_threshold:
            self._state = CircuitState.OPEN
            logger.warning(
                "Circuit breaker opened",
                extra={
                    "failure_count": self._failure_count,
                    "recovery_timeout": self.recovery_timeout
                }
            )


class WebhookNotifier(INotifier):
    """
    Posts workflow events to the notification gateway.

    Retries with exponential backoff, then raises ``NotifierException``.
    With no webhook configured, events are logged and dropped.
    """

    def __init__(
        self,
        webhook_url: Optional[str],
        timeout_seconds: float = 5.0,
        max_retries: int = 3,
        backoff_base: float = 1.0,
        circuit_breaker: Optional[CircuitBreaker] = None,
        http_client: Optional[httpx.AsyncClient] = None
    ):
        self._webhook_url = webhook_url
        self._timeout = timeout_seconds
        self._max_retries = max_retries
        self._backoff_base = backoff_base
        self._circuit_breaker = circuit_breaker or CircuitBreaker(
            failure_threshold=5,
            recovery_timeout=60
        )
        self._http_client = http_client

    async def _get_client(self) -> httpx.AsyncClient:
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=self._timeout)
        return self._http_client

    @staticmethod
    def build_payload(event: WorkflowEvent) -> Dict[str, Any]:
        """Gateway payload: subject line plus the event fields."""
        subject = f"[{event.rma_number}] {event.event_type.value.replace('_', ' ')}"
        return {"subject": subject, **event.to_dict()}

    async def send(self, event: WorkflowEvent) -> None:
        if not self._webhook_url:
            logger.debug(
                "Notifier webhook not configured, skipping notification",
                extra={"case_id": event.case_id, "event_type": event.event_type.value}
            )
            return

        if not self._circuit_breaker.allow_request():
            raise NotifierException(
                "Circuit breaker open",
                {"case_id": event.case_id, "event_type": event.event_type.value}
            )

        payload = self.build_payload(event)
        last_error = None

        for attempt in range(self._max_retries):
            try:
                client = await self._get_client()
                response = await client.post(self._webhook_url, json=payload)

                if response.is_success:
                    self._circuit_breaker.record_success()
                    logger.info(
                        "Notification sent",
                        extra={
                            "case_id": event.case_id,
                            "event_type": event.event_type.value,
                            "recipient": event.recipient
                        }
                    )
                    return

                last_error = f"HTTP {response.status_code}"
                logger.warning(
                    "Notifier returned non-success status",
                    extra={"status_code": response.status_code, "attempt": attempt + 1}
                )
            except httpx.HTTPError as e:
                last_error = str(e)
                logger.warning(
                    "Notification attempt failed",
                    extra={"error": str(e), "attempt": attempt + 1, "case_id": event.case_id}
                )

            if attempt < self._max_retries - 1:
                await asyncio.sleep(self._backoff_base * (2 ** attempt))

        self._circuit_breaker.record_failure()
        raise NotifierException(
            f"Delivery failed after {self._max_retries} attempts",
            {"case_id": event.case_id, "last_error": last_error}
        )

    async def close(self) -> None:
        """Close HTTP client."""
        if self._http_client:
            await self._http_client.aclose()
            self._http_client = None


# ========== Scheduling ==========

class SweepScheduler:
    """
    APScheduler wrapper running the SLA sweep on an interval.

    ``max_instances=1`` keeps a slow cycle from overlapping the next one.
    """

    def __init__(self, interval_seconds: int = 300):
        self.interval_seconds = interval_seconds
        self._scheduler: Optional[AsyncIOScheduler] = None
        self._running = False

    async def start(self, job_func: Callable[[], Awaitable[Any]]) -> None:
        """Start the scheduler with the given coroutine function."""
        if self._running:
            logger.warning("Sweep scheduler already running")
            return

        self._scheduler = AsyncIOScheduler()
        self._scheduler.add_job(
            job_func,
            "interval",
            seconds=self.interval_seconds,
            id="sla_sweep",
            name="SLA Sweep Job",
            misfire_grace_time=60,
            max_instances=1,
            coalesce=True,
            replace_existing=True
        )
        self._scheduler.start()
        self._running = True

        logger.info("Sweep scheduler started", extra={"interval_seconds": self.interval_seconds})

    async def stop(self) -> None:
        """Stop the scheduler gracefully."""
        if not self._running:
            return

        if self._scheduler:
            self._scheduler.shutdown(wait=False)

        self._running = False
        logger.info("Sweep scheduler stopped")

    @property
    def is_running(self) -> bool:
        return self._running
