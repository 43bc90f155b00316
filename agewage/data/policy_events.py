"""
Policy events calendar for age-threshold minimum wage reforms.

Each event defines a treatment assignment rule: workers at or above the age
threshold are eligible for the higher rate from the implementation date on.
"""

import logging
import re
from dataclasses import dataclass, field
from datetime import date
from pathlib import Path
from typing import Any

import pandas as pd
import yaml

from config.settings import get_settings

logger = logging.getLogger(__name__)


def slugify(name: str) -> str:
    """Column-safe identifier for an event name."""
    slug = re.sub(r"[^0-9a-z]+", "_", name.lower()).strip("_")
    return slug or "event"


@dataclass(frozen=True)
class PolicyEvent:
    """A single age-threshold reform."""

    name: str
    age_threshold: int
    implementation_date: date
    slug: str = ""
    description: str = ""
    metadata: dict[str, Any] = field(default_factory=dict, compare=False, hash=False)

    def __post_init__(self):
        if not self.slug:
            object.__setattr__(self, "slug", slugify(self.name))
        if isinstance(self.implementation_date, str):
            object.__setattr__(
                self, "implementation_date", date.fromisoformat(self.implementation_date)
            )

    @property
    def post_col(self) -> str:
        return f"post_{self.slug}"

    @property
    def age_col(self) -> str:
        return f"age_{self.age_threshold}p"

    @property
    def treat_col(self) -> str:
        return f"treat_post_{self.slug}"

    @property
    def rel_col(self) -> str:
        return f"rel_{self.slug}"

    @property
    def timestamp(self) -> pd.Timestamp:
        return pd.Timestamp(self.implementation_date)

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return {
            "name": self.name,
            "slug": self.slug,
            "age_threshold": self.age_threshold,
            "implementation_date": self.implementation_date.isoformat(),
            "description": self.description,
        }


class PolicyCalendar:
    """
    Ordered, read-only set of policy events.

    Events are kept sorted by implementation date.
    """

    def __init__(self, events: list[PolicyEvent] | None = None):
        self._events: list[PolicyEvent] = []
        for event in events or []:
            self.add_event(event)

    @property
    def events(self) -> tuple[PolicyEvent, ...]:
        return tuple(self._events)

    def add_event(self, event: PolicyEvent) -> None:
        """Add a policy event to the calendar."""
        if any(e.slug == event.slug for e in self._events):
            raise ValueError(f"Duplicate policy event slug: {event.slug}")
        self._events.append(event)
        self._events.sort(key=lambda e: (e.implementation_date, e.slug))

    def get(self, key: str) -> PolicyEvent:
        """Look up an event by slug or name."""
        for event in self._events:
            if key in (event.slug, event.name):
                return event
        raise KeyError(f"Unknown policy event: {key}")

    def get_events_in_window(self, start_date: date, end_date: date) -> list[PolicyEvent]:
        """Events implemented within [start_date, end_date]."""
        return [e for e in self._events if start_date <= e.implementation_date <= end_date]

    def isolation_window(self, event: PolicyEvent) -> tuple[date | None, date | None]:
        """
        Dates between the neighbouring events.

        Used to isolate one reform when several thresholds share a running
        sample: the window runs from the previous implementation date up to
        the day before the next one.
        """
        idx = self._events.index(event)
        start = self._events[idx - 1].implementation_date if idx > 0 else None
        end = None
        if idx + 1 < len(self._events):
            end = (pd.Timestamp(self._events[idx + 1].implementation_date)
                   - pd.Timedelta(days=1)).date()
        return start, end

    def __iter__(self):
        return iter(self._events)

    def __len__(self) -> int:
        return len(self._events)

    def to_dataframe(self) -> pd.DataFrame:
        """Convert all events to DataFrame."""
        return pd.DataFrame([e.to_dict() for e in self._events])

    @classmethod
    def from_records(cls, records: list[dict]) -> "PolicyCalendar":
        events = []
        for rec in records:
            events.append(PolicyEvent(
                name=rec["name"],
                age_threshold=int(rec["age_threshold"]),
                implementation_date=rec["implementation_date"],
                slug=rec.get("slug", ""),
                description=rec.get("description", ""),
            ))
        return cls(events)

    @classmethod
    def from_yaml(cls, path: Path) -> "PolicyCalendar":
        with open(path) as f:
            records = yaml.safe_load(f) or []
        return cls.from_records(records)


def get_policy_calendar() -> PolicyCalendar:
    """
    Get the configured policy calendar.

    Returns:
        PolicyCalendar with the National Living Wage age-band reforms
    """
    return PolicyCalendar.from_yaml(get_settings().policy_events_path)
