# FILE: atp/entity.py
from __future__ import annotations

"""
Tracked entity: the per-resource state kept across batches.

One canonical in-memory shape is used everywhere; `to_record` / `from_record`
are the only place that knows the persisted field names.

Persisted record (JSON object, timestamps RFC 3339 UTC):

    identity               str
    first_seen             str
    last_exceeded          str | null
    current_values         {metric: float}
    max_values             {metric: float}
    attributes             {key: str}          (omitted when empty)
    metric_history         {metric: [float]}   (omitted when empty)
    last_anomaly_detected  str                 (omitted when unset)
"""

import datetime as _dt
import math
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional


# Go-style zero timestamps may appear in files written by older collectors.
_ZERO_TIME_PREFIX = "0001-01-01"


def utcnow() -> _dt.datetime:
    return _dt.datetime.now(_dt.timezone.utc)


def _ts_to_str(ts: Optional[_dt.datetime]) -> Optional[str]:
    if ts is None:
        return None
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=_dt.timezone.utc)
    return ts.astimezone(_dt.timezone.utc).isoformat().replace("+00:00", "Z")


def _ts_from_str(raw: Any) -> Optional[_dt.datetime]:
    if not raw or not isinstance(raw, str) or raw.startswith(_ZERO_TIME_PREFIX):
        return None
    s = raw.strip()
    if s.endswith("Z"):
        s = s[:-1] + "+00:00"
    # fromisoformat only takes up to microseconds; trim nanosecond fractions.
    if "." in s:
        head, _, tail = s.partition(".")
        digits = ""
        rest = ""
        for i, ch in enumerate(tail):
            if ch.isdigit():
                digits += ch
            else:
                rest = tail[i:]
                break
        s = f"{head}.{digits[:6].ljust(6, '0')}{rest}"
    ts = _dt.datetime.fromisoformat(s)
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=_dt.timezone.utc)
    return ts


def _float_map(raw: Any) -> Dict[str, float]:
    out: Dict[str, float] = {}
    if not isinstance(raw, Mapping):
        return out
    for k, v in raw.items():
        try:
            f = float(v)
        except (TypeError, ValueError):
            continue
        if math.isfinite(f):
            out[str(k)] = f
    return out


@dataclass
class TrackedEntity:
    identity: str
    first_seen: _dt.datetime = field(default_factory=utcnow)
    last_exceeded: Optional[_dt.datetime] = None
    last_anomaly_detected: Optional[_dt.datetime] = None
    current_values: Dict[str, float] = field(default_factory=dict)
    max_values: Dict[str, float] = field(default_factory=dict)
    metric_history: Dict[str, List[float]] = field(default_factory=dict)
    attributes: Dict[str, str] = field(default_factory=dict)

    # ------------------------------------------------------------------ #
    # Mutation helpers (callers hold the tracker lock)
    # ------------------------------------------------------------------ #

    def observe(self, values: Mapping[str, float]) -> None:
        """Record the latest values and raise the running maxima."""
        for metric, value in values.items():
            self.current_values[metric] = value
            if metric not in self.max_values or value > self.max_values[metric]:
                self.max_values[metric] = value

    def mark_exceeded(self, now: _dt.datetime) -> None:
        if self.last_exceeded is None or now > self.last_exceeded:
            self.last_exceeded = now

    def mark_anomaly(self, now: _dt.datetime) -> None:
        if self.last_anomaly_detected is None or now > self.last_anomaly_detected:
            self.last_anomaly_detected = now

    def push_history(self, metric: str, value: float, limit: int) -> List[float]:
        """
        Append `value` to the metric's history, dropping the oldest entries
        beyond `limit`. Returns the history as it was before the append.
        """
        hist = self.metric_history.get(metric)
        prior = list(hist) if hist else []
        new = prior + [value]
        if limit > 0 and len(new) > limit:
            new = new[len(new) - limit:]
        self.metric_history[metric] = new
        return prior

    # ------------------------------------------------------------------ #
    # Persisted mapping
    # ------------------------------------------------------------------ #

    def to_record(self) -> Dict[str, Any]:
        rec: Dict[str, Any] = {
            "identity": self.identity,
            "first_seen": _ts_to_str(self.first_seen),
            "last_exceeded": _ts_to_str(self.last_exceeded),
            "current_values": dict(self.current_values),
            "max_values": dict(self.max_values),
        }
        if self.attributes:
            rec["attributes"] = dict(self.attributes)
        if self.metric_history:
            rec["metric_history"] = {k: list(v) for k, v in self.metric_history.items()}
        if self.last_anomaly_detected is not None:
            rec["last_anomaly_detected"] = _ts_to_str(self.last_anomaly_detected)
        return rec

    @classmethod
    def from_record(cls, rec: Mapping[str, Any], *, identity: Optional[str] = None) -> "TrackedEntity":
        ident = str(rec.get("identity") or identity or "")
        if not ident:
            raise ValueError("tracked entity record has no identity")

        history: Dict[str, List[float]] = {}
        raw_hist = rec.get("metric_history")
        if isinstance(raw_hist, Mapping):
            for metric, seq in raw_hist.items():
                if isinstance(seq, list):
                    history[str(metric)] = list(_float_map(dict(enumerate(seq))).values())

        attrs = rec.get("attributes")
        return cls(
            identity=ident,
            first_seen=_ts_from_str(rec.get("first_seen")) or utcnow(),
            last_exceeded=_ts_from_str(rec.get("last_exceeded")),
            last_anomaly_detected=_ts_from_str(rec.get("last_anomaly_detected")),
            current_values=_float_map(rec.get("current_values")),
            max_values=_float_map(rec.get("max_values")),
            metric_history=history,
            attributes={str(k): str(v) for k, v in attrs.items()} if isinstance(attrs, Mapping) else {},
        )


__all__ = ["TrackedEntity", "utcnow"]
