"""
Ephemera — Status Notifications

Relays StatusEvents (Active reached, Degraded entered, Deleted reached,
conflict recorded) to whatever tells humans about them: a generic JSON
webhook, a Slack incoming webhook, or an in-process callback.

Delivery is fire-and-forget on background threads with bounded retry;
a failed delivery is logged and recorded, never raised into the
reconciler.

Config in ephemera.yaml:
    notifications:
      webhooks:
        - url: https://hooks.slack.com/services/...
          format: slack
          states: [active, degraded]
"""

from __future__ import annotations

import abc
import json
import logging
import threading
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable

from lifecycle.types import StatusEvent

logger = logging.getLogger("ephemera.notifier")


class StatusNotifier(abc.ABC):
    """Receives status events from the reconciler."""

    @abc.abstractmethod
    def publish(self, event: StatusEvent) -> None:
        ...


class NullNotifier(StatusNotifier):
    def publish(self, event: StatusEvent) -> None:
        pass


class CallbackNotifier(StatusNotifier):
    """Adapts a plain callable; used by embedders and tests."""

    def __init__(self, callback: Callable[[StatusEvent], None]):
        self.callback = callback

    def publish(self, event: StatusEvent) -> None:
        self.callback(event)


class CompositeNotifier(StatusNotifier):
    """Fans one event out to several notifiers; one failing does not stop the rest."""

    def __init__(self, notifiers: list[StatusNotifier]):
        self.notifiers = list(notifiers)

    def publish(self, event: StatusEvent) -> None:
        for notifier in self.notifiers:
            try:
                notifier.publish(event)
            except Exception:
                logger.exception("Notifier %s failed for %s",
                                  type(notifier).__name__, event.environment_id)


# ═══════════════════════════════════════════════════════════════════
# Webhooks
# ═══════════════════════════════════════════════════════════════════

@dataclass
class WebhookConfig:
    """Configuration for a single webhook target."""
    url: str
    format: str = "generic"     # generic, slack
    enabled: bool = True
    states: list[str] | None = None     # None = every status event
    max_retries: int = 2
    timeout_seconds: float = 10.0
    headers: dict[str, str] = field(default_factory=dict)

    @staticmethod
    def from_dict(data: dict[str, Any]) -> WebhookConfig:
        return WebhookConfig(
            url=str(data["url"]),
            format=str(data.get("format", "generic")),
            enabled=bool(data.get("enabled", True)),
            states=list(data["states"]) if data.get("states") else None,
            max_retries=int(data.get("max_retries", 2)),
            timeout_seconds=float(data.get("timeout_seconds", 10.0)),
            headers=dict(data.get("headers") or {}),
        )


@dataclass
class DeliveryRecord:
    """Record of a webhook delivery attempt."""
    delivery_id: str
    webhook_url: str
    environment_id: str
    state: str
    status: str         # pending, delivered, failed
    attempts: int = 0
    last_attempt_at: float = 0.0
    error: str = ""
    created_at: float = 0.0


class WebhookNotifier(StatusNotifier):
    """Non-blocking webhook sender with per-target state filtering."""

    def __init__(
        self,
        configs: list[WebhookConfig] | None = None,
        http_client: Callable | None = None,
        sleep_fn: Callable[[float], None] = time.sleep,
    ):
        self.configs = configs or []
        self._http_client = http_client or _default_http_client
        self._sleep = sleep_fn
        self._deliveries: list[DeliveryRecord] = []
        self._threads: list[threading.Thread] = []
        self._lock = threading.Lock()

    def publish(self, event: StatusEvent) -> None:
        for config in self.configs:
            if not config.enabled:
                continue
            if config.states and event.state.value not in config.states:
                continue

            payload = _format_payload(config.format, event)
            record = DeliveryRecord(
                delivery_id=f"dlv_{uuid.uuid4().hex[:12]}",
                webhook_url=config.url,
                environment_id=event.environment_id,
                state=event.state.value,
                status="pending",
                created_at=time.time(),
            )
            thread = threading.Thread(
                target=self._deliver,
                args=(config, payload, record),
                daemon=True,
            )
            with self._lock:
                self._deliveries.append(record)
                self._threads.append(thread)
            thread.start()

    def _deliver(self, config: WebhookConfig, payload: dict, record: DeliveryRecord):
        attempts = max(1, config.max_retries)
        for attempt in range(1, attempts + 1):
            record.attempts = attempt
            record.last_attempt_at = time.time()
            try:
                response = self._http_client(
                    url=config.url,
                    payload=payload,
                    headers=config.headers,
                    timeout=config.timeout_seconds,
                )
                if response.get("success"):
                    record.status = "delivered"
                    logger.info("Webhook delivered: %s → %s (attempt %d)",
                                record.delivery_id, config.url[:50], attempt)
                    return
                record.error = response.get("error", "unknown error")
                logger.warning("Webhook failed: %s → %s: %s (attempt %d/%d)",
                               record.delivery_id, config.url[:50], record.error,
                               attempt, attempts)
            except Exception as e:
                record.error = str(e)[:200]
                logger.warning("Webhook error: %s → %s: %s (attempt %d/%d)",
                               record.delivery_id, config.url[:50], e,
                               attempt, attempts)

            if attempt < attempts:
                self._sleep(min(2 ** attempt, 10))

        record.status = "failed"
        logger.error("Webhook exhausted retries: %s → %s after %d attempts",
                     record.delivery_id, config.url[:50], attempts)

    def wait(self, timeout: float = 5.0) -> None:
        """Join outstanding delivery threads."""
        with self._lock:
            threads = list(self._threads)
            self._threads.clear()
        deadline = time.monotonic() + timeout
        for t in threads:
            t.join(max(0.0, deadline - time.monotonic()))

    @property
    def deliveries(self) -> list[dict[str, Any]]:
        with self._lock:
            return [
                {
                    "delivery_id": d.delivery_id,
                    "webhook_url": d.webhook_url[:50],
                    "environment_id": d.environment_id,
                    "state": d.state,
                    "status": d.status,
                    "attempts": d.attempts,
                    "error": d.error,
                }
                for d in self._deliveries[-100:]
            ]


# ═══════════════════════════════════════════════════════════════════
# Payload Formatters
# ═══════════════════════════════════════════════════════════════════

def _format_payload(fmt: str, event: StatusEvent) -> dict[str, Any]:
    if fmt == "slack":
        return _format_slack(event)
    return _format_generic(event)


def _format_generic(event: StatusEvent) -> dict[str, Any]:
    return {"event_type": "environment_status", **event.to_dict()}


_STATE_EMOJI = {"active": ":white_check_mark:", "degraded": ":warning:", "deleted": ":wastebasket:"}


def _format_slack(event: StatusEvent) -> dict[str, Any]:
    """Slack Block Kit format."""
    state = event.state.value
    summary = event.resources_summary or {}
    blocks: list[dict[str, Any]] = [
        {
            "type": "header",
            "text": {"type": "plain_text",
                     "text": f"Preview {event.environment_id}: {state}"},
        },
        {
            "type": "section",
            "fields": [
                {"type": "mrkdwn", "text": f"*State:* {_STATE_EMOJI.get(state, '')} {state}"},
                {"type": "mrkdwn", "text": f"*Generation:* {event.generation}"},
            ],
        },
    ]
    if summary.get("dns"):
        blocks.append({
            "type": "section",
            "text": {"type": "mrkdwn", "text": f"*URL:* https://{summary['dns']}"},
        })
    if event.error is not None:
        blocks.append({
            "type": "section",
            "text": {"type": "mrkdwn",
                     "text": f"*Error ({event.error.kind}):* {event.error.message[:300]}"},
        })
    return {"blocks": blocks}


# ═══════════════════════════════════════════════════════════════════
# Default HTTP Client
# ═══════════════════════════════════════════════════════════════════

def _default_http_client(
    url: str,
    payload: dict,
    headers: dict[str, str] | None = None,
    timeout: float = 10.0,
) -> dict[str, Any]:
    """
    HTTP POST via urllib.
    Returns {"success": bool, "status_code": int, "error": str}.
    """
    import urllib.error
    import urllib.request

    data = json.dumps(payload, default=str).encode("utf-8")
    all_headers = {"Content-Type": "application/json"}
    if headers:
        all_headers.update(headers)

    req = urllib.request.Request(url, data=data, headers=all_headers, method="POST")
    try:
        with urllib.request.urlopen(req, timeout=timeout) as resp:
            return {"success": resp.status < 400, "status_code": resp.status}
    except urllib.error.HTTPError as e:
        return {"success": False, "status_code": e.code, "error": str(e)}
    except Exception as e:
        return {"success": False, "status_code": 0, "error": str(e)}


def build_notifier(
    config: dict[str, Any] | None = None,
    callback: Callable[[StatusEvent], None] | None = None,
) -> StatusNotifier:
    """Notifier from the `notifications:` section, plus an optional callback."""
    notif_cfg = (config or {}).get("notifications") or {}
    hooks = [WebhookConfig.from_dict(h) for h in notif_cfg.get("webhooks") or []]
    notifiers: list[StatusNotifier] = []
    if hooks:
        notifiers.append(WebhookNotifier(configs=hooks))
    if callback is not None:
        notifiers.append(CallbackNotifier(callback))
    if not notifiers:
        return NullNotifier()
    if len(notifiers) == 1:
        return notifiers[0]
    return CompositeNotifier(notifiers)
