"""
In-process counters rendered in the Prometheus text exposition format.

Counters live for the life of the process and are scraped from /metrics.
Label values come from bounded sets only (route templates, enum values),
never from raw request data.
"""

import threading
from typing import Dict, Iterable, List, Optional, Tuple


def _escape(value: str) -> str:
    return value.replace("\\", "\\\\").replace("\n", "\\n").replace('"', '\\"')


class Counter:
    def __init__(self, name: str, help_text: str, label_names: Iterable[str] = ()):
        self.name = name
        self.help_text = help_text
        self.label_names: Tuple[str, ...] = tuple(label_names)
        self._values: Dict[Tuple[str, ...], float] = {}
        self._lock = threading.Lock()

    def _key(self, labels: Optional[Dict[str, str]]) -> Tuple[str, ...]:
        labels = labels or {}
        unknown = set(labels) - set(self.label_names)
        if unknown:
            raise ValueError(f"{self.name} has no label(s) {sorted(unknown)}")
        return tuple(str(labels.get(name, "")) for name in self.label_names)

    def inc(self, labels: Optional[Dict[str, str]] = None, amount: float = 1.0) -> None:
        if amount < 0:
            raise ValueError("counters can only increase")
        key = self._key(labels)
        with self._lock:
            self._values[key] = self._values.get(key, 0.0) + amount

    def value(self, labels: Optional[Dict[str, str]] = None) -> float:
        key = self._key(labels)
        with self._lock:
            return self._values.get(key, 0.0)

    def render(self) -> List[str]:
        lines = [f"# HELP {self.name} {self.help_text}", f"# TYPE {self.name} counter"]
        with self._lock:
            samples = sorted(self._values.items())
        for key, value in samples:
            if self.label_names:
                pairs = ",".join(f'{name}="{_escape(v)}"' for name, v in zip(self.label_names, key))
                lines.append(f"{self.name}{{{pairs}}} {value:g}")
            else:
                lines.append(f"{self.name} {value:g}")
        return lines

    def reset(self) -> None:
        with self._lock:
            self._values.clear()


class MetricsRegistry:
    def __init__(self):
        self._counters: Dict[str, Counter] = {}
        self._lock = threading.Lock()

    def counter(self, name: str, help_text: str, label_names: Iterable[str] = ()) -> Counter:
        """Return the counter called ``name``, registering it on first use."""
        with self._lock:
            existing = self._counters.get(name)
            if existing is None:
                existing = self._counters[name] = Counter(name, help_text, label_names)
            return existing

    def render(self) -> str:
        with self._lock:
            counters = sorted(self._counters.values(), key=lambda c: c.name)
        return "\n".join(line for counter in counters for line in counter.render()) + "\n"

    def reset(self) -> None:
        with self._lock:
            counters = list(self._counters.values())
        for counter in counters:
            counter.reset()


METRICS = MetricsRegistry()

http_requests_total = METRICS.counter(
    "promptforge_http_requests_total",
    "HTTP requests by method, route template and status code.",
    ["method", "route", "status"],
)
ratelimit_block_total = METRICS.counter(
    "promptforge_ratelimit_block_total",
    "Requests rejected by the rate limiter.",
    ["route"],
)
site_access_redirect_total = METRICS.counter(
    "promptforge_site_access_redirect_total",
    "Requests redirected to the holding page by the coming-soon gate.",
)
notifications_sent_total = METRICS.counter(
    "promptforge_notifications_sent_total",
    "Notifications dispatched, by type and severity.",
    ["type", "severity"],
)
exports_total = METRICS.counter(
    "promptforge_exports_total",
    "Export formats rendered, by plan and format.",
    ["plan", "format"],
)
stripe_webhooks_total = METRICS.counter(
    "promptforge_stripe_webhooks_total",
    "Verified Stripe webhook events, by event type.",
    ["event_type"],
)
