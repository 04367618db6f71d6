"""Structured login events, tracing and metrics."""

from __future__ import annotations

import logging
import time
from contextlib import ExitStack, contextmanager
from typing import Any, Iterator, Mapping

import msgspec

from .serialization import json_encode

_SENSITIVE_FIELDS = frozenset({"password", "mfa_code", "mfa_secret", "secret", "token", "SAMLResponse"})


class ObservabilityConfig(msgspec.Struct, frozen=True):
    """Top-level observability configuration."""

    enabled: bool = True
    logger_name: str = "turnstile.events"
    opentelemetry_enabled: bool = True
    opentelemetry_tracer: str = "turnstile"
    span_name: str = "turnstile.login"
    datadog_enabled: bool = True
    datadog_metric_succeeded: str = "turnstile.login.succeeded"
    datadog_metric_failed: str = "turnstile.login.failed"
    datadog_metric_timing: str = "turnstile.login.duration"
    datadog_tags: tuple[tuple[str, str], ...] = ()


class StepObservation:
    """Mutable handle for one orchestrator step."""

    __slots__ = ("attributes", "span", "start")

    def __init__(self, *, span: Any | None, attributes: Mapping[str, Any]) -> None:
        self.span = span
        self.attributes = dict(attributes)
        self.start = time.perf_counter()

    def annotate(self, key: str, value: Any) -> None:
        self.attributes[key] = value
        if self.span is not None:
            self.span.set_attribute(key, value)

    @property
    def duration_ms(self) -> float:
        return (time.perf_counter() - self.start) * 1000.0


class Observability:
    """Coordinate logging, tracing and metrics providers for login events."""

    def __init__(
        self,
        config: ObservabilityConfig | None = None,
        *,
        tracer: Any | None = None,
        statsd: Any | None = None,
    ) -> None:
        self.config = config or ObservabilityConfig()
        self._logger = logging.getLogger(self.config.logger_name)
        self._tracer = tracer
        self._status_cls = None
        self._status_error = None
        self._statsd = statsd
        self._base_datadog_tags = tuple(f"{key}:{value}" for key, value in self.config.datadog_tags)
        if self.config.enabled:
            if self._tracer is None:
                self._prepare_opentelemetry()
            if self._statsd is None:
                self._prepare_datadog()

    @property
    def enabled(self) -> bool:
        return self.config.enabled

    def _prepare_opentelemetry(self) -> None:
        if not self.config.opentelemetry_enabled:
            return
        try:
            from opentelemetry import trace  # type: ignore[import-not-found]
        except ImportError:  # pragma: no cover - optional dependency
            return
        self._tracer = trace.get_tracer(self.config.opentelemetry_tracer)
        try:
            from opentelemetry.trace import Status, StatusCode  # type: ignore[import-not-found]
        except ImportError:  # pragma: no cover - optional dependency
            return
        self._status_cls = Status
        self._status_error = getattr(StatusCode, "ERROR", None)

    def _prepare_datadog(self) -> None:
        if not self.config.datadog_enabled:
            return
        try:
            from datadog import statsd  # type: ignore[import-not-found]
        except ImportError:  # pragma: no cover - optional dependency
            return
        self._statsd = statsd

    @contextmanager
    def step(self, auth_type: str | None, *, flow_step: str) -> Iterator[StepObservation]:
        """Wrap one orchestrator step in a span when tracing is available."""

        attributes = {"login.auth_type": auth_type or "", "login.flow_step": flow_step}
        with ExitStack() as stack:
            span = None
            if self.enabled and self._tracer is not None:
                span = stack.enter_context(self._tracer.start_as_current_span(self.config.span_name))
                for key, value in attributes.items():
                    span.set_attribute(key, value)
            observation = StepObservation(span=span, attributes=attributes)
            try:
                yield observation
            except BaseException as error:
                if span is not None:
                    span.record_exception(error)
                    if self._status_cls is not None and self._status_error is not None:
                        span.set_status(self._status_cls(self._status_error, description=type(error).__name__))
                raise
            finally:
                self._timing(observation)

    def event(self, event: str, **fields: Any) -> None:
        """Emit a single JSON log line for ``event``."""

        if not self.enabled:
            return
        payload: dict[str, Any] = {"event": event}
        for key, value in fields.items():
            if value is None or key in _SENSITIVE_FIELDS:
                continue
            payload[key] = value
        self._logger.info(json_encode(payload).decode())
        if self._statsd is None:
            return
        tags = list(self._base_datadog_tags)
        if fields.get("auth_type"):
            tags.append(f"auth_type:{fields['auth_type']}")
        if event == "login.succeeded":
            self._statsd.increment(self.config.datadog_metric_succeeded, tags=tags)
        elif event in {"login.failed", "login.unavailable"}:
            self._statsd.increment(self.config.datadog_metric_failed, tags=tags + [f"event:{event}"])

    def _timing(self, observation: StepObservation) -> None:
        if self._statsd is None:
            return
        tags = list(self._base_datadog_tags)
        tags.append(f"flow_step:{observation.attributes.get('login.flow_step', '')}")
        self._statsd.timing(self.config.datadog_metric_timing, observation.duration_ms, tags=tags)


__all__ = ["Observability", "ObservabilityConfig", "StepObservation"]
