from __future__ import annotations

import logging
from collections.abc import Callable

import httpx

from scenariomarket.config import Settings
from scenariomarket.domain.events import MarketEvent
from scenariomarket.security.redaction import sanitize_text
from scenariomarket.services.retry import RetryAttempt, RetryPolicy, retry_with_backoff

logger = logging.getLogger(__name__)

_ERROR_SNIPPET_LIMIT = 200


class _RetryableDeliveryError(RuntimeError):
    def __init__(self, response: httpx.Response) -> None:
        super().__init__(f"webhook returned status={response.status_code}")
        self.response = response


def _retry_after(exc: Exception) -> str | None:
    if isinstance(exc, _RetryableDeliveryError):
        return exc.response.headers.get("Retry-After")
    return None


def _response_snippet(response: httpx.Response) -> str:
    text = response.text.strip().replace("\n", " ")
    return sanitize_text(text[:_ERROR_SNIPPET_LIMIT])


class WebhookEventPublisher:
    """POST each committed market event as JSON to an external receiver.

    Delivery is best effort: transport errors, 429 and 5xx are retried with
    backoff, and a final failure is logged instead of raised.
    Calls block for the whole retry budget; wrap in ``BackgroundEventPublisher``
    to keep that off the request path.
    """

    def __init__(
        self,
        url: str,
        *,
        token: str | None = None,
        timeout: float | httpx.Timeout = 5.0,
        max_attempts: int = 3,
        max_total_sleep_seconds: float = 2.0,
        transport: httpx.BaseTransport | None = None,
        sleep_fn: Callable[[float], None] | None = None,
    ) -> None:
        headers = {"Content-Type": "application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        resolved_timeout = (
            timeout
            if isinstance(timeout, httpx.Timeout)
            else httpx.Timeout(timeout=timeout, connect=min(timeout, 5.0))
        )
        self.url = url
        self.client = httpx.Client(timeout=resolved_timeout, transport=transport, headers=headers)
        self.retry_policy = RetryPolicy(
            max_attempts=max_attempts,
            base_delay_ms=200,
            max_delay_ms=2000,
            max_total_sleep_seconds=max_total_sleep_seconds,
        )
        self._sleep_fn = sleep_fn

    @classmethod
    def from_settings(
        cls, settings: Settings, *, transport: httpx.BaseTransport | None = None
    ) -> WebhookEventPublisher | None:
        if not settings.events_webhook_url:
            return None
        token = (
            settings.events_webhook_token.get_secret_value()
            if settings.events_webhook_token is not None
            else None
        )
        return cls(
            settings.events_webhook_url,
            token=token,
            timeout=settings.events_webhook_timeout_seconds,
            max_attempts=settings.events_webhook_max_attempts,
            max_total_sleep_seconds=settings.events_webhook_max_total_sleep_seconds,
            transport=transport,
        )

    def __enter__(self) -> WebhookEventPublisher:
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        del exc_type, exc, tb
        self.close()

    def close(self) -> None:
        self.client.close()

    def _post(self, payload: dict[str, object]) -> httpx.Response:
        response = self.client.post(self.url, json=payload)
        if response.status_code == 429 or response.status_code >= 500:
            raise _RetryableDeliveryError(response)
        return response

    def publish(self, event: MarketEvent) -> None:
        payload = event.to_payload()
        log_extra = {
            "event_type": str(event.event_type),
            "event_id": event.event_id,
            "scenario_id": event.scenario_id,
        }

        def _on_retry(attempt: RetryAttempt) -> None:
            logger.warning(
                "webhook_delivery_retry",
                extra={
                    "extra": {
                        **log_extra,
                        "attempt": attempt.attempt,
                        "delay_ms": attempt.delay_ms,
                        "error_type": attempt.error_type,
                    }
                },
            )

        try:
            response = retry_with_backoff(
                lambda: self._post(payload),
                policy=self.retry_policy,
                retry_on=(_RetryableDeliveryError, httpx.TimeoutException, httpx.TransportError),
                sleep_fn=self._sleep_fn,
                on_retry=_on_retry,
                retry_after_getter=_retry_after,
            )
        except _RetryableDeliveryError as exc:
            logger.error(
                "webhook_delivery_failed",
                extra={
                    "extra": {
                        **log_extra,
                        "status": exc.response.status_code,
                        "body": _response_snippet(exc.response),
                    }
                },
            )
            return
        except httpx.HTTPError as exc:
            logger.error(
                "webhook_delivery_failed",
                extra={"extra": {**log_extra, "error_type": type(exc).__name__}},
            )
            return

        if response.status_code >= 400:
            logger.error(
                "webhook_delivery_rejected",
                extra={
                    "extra": {
                        **log_extra,
                        "status": response.status_code,
                        "body": _response_snippet(response),
                    }
                },
            )
            return
        logger.debug("webhook_delivered", extra={"extra": {**log_extra, "status": response.status_code}})
