"""Recent Kubernetes Events for a single object.

``kubectl get events`` is asked to render a go-template that keeps only the
events whose ``involvedObject`` matches the resource, drops the common
success reasons, and joins the interesting fields with fixed separators.
:func:`parse_events` splits that blob back into :class:`Event` records.

Events have carried their count and last-seen time in different fields
across API versions, so both are read from the first populated one:

    count      -- .count, then .series.count, then .deprecatedCount
    timestamp  -- .lastTimestamp, then .series.lastObservedTime,
                  then .deprecatedLastTimestamp, then .eventTime
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime

from kubeconverge.observability.logging import get_logger

_logger = get_logger("resources.events")

EVENT_SEPARATOR: str = "ENDEVENT--BEGINEVENT"
FIELD_SEPARATOR: str = "ENDFIELD--BEGINFIELD"
FIELD_EMPTY_VALUE: str = "<no value>"

FIELDS: tuple[str, ...] = (
    ".involvedObject.kind",
    ".involvedObject.name",
    ".count",
    ".lastTimestamp",
    ".reason",
    ".message",
    ".eventTime",
    ".deprecatedCount",
    ".deprecatedLastTimestamp",
    ".series",
)

SUCCESS_REASONS: tuple[str, ...] = ("Started", "Created", "SuccessfulCreate", "Scheduled", "Pulling", "Pulled")

_SERIES_COUNT = re.compile(r"count:(\S+?)(?=\s)")
_SERIES_LAST_OBSERVED = re.compile(r"lastObservedTime:(\S+?)(?=\])")


def go_template_for(kind: str, name: str) -> str:
    """Return the ``--output=go-template`` body selecting events for *kind*/*name*."""
    conditions = [f'(eq .involvedObject.kind "{kind}")', f'(eq .involvedObject.name "{name}")']
    conditions.extend(f'(ne .reason "{reason}")' for reason in SUCCESS_REASONS)
    fields = f'{{{{print "{FIELD_SEPARATOR}"}}}}'.join(f"{{{{{field}}}}}" for field in FIELDS)
    return (
        f"{{{{range .items}}}}{{{{if and {' '.join(conditions)}}}}}"
        f'{fields}{{{{print "{EVENT_SEPARATOR}"}}}}'
        "{{end}}{{end}}"
    )


@dataclass(frozen=True)
class Event:
    subject_kind: str
    subject_name: str
    last_timestamp: datetime
    reason: str
    message: str
    count: int

    def seen_since(self, moment: datetime) -> bool:
        return int(moment.timestamp()) <= int(self.last_timestamp.timestamp())

    def __str__(self) -> str:
        return f"{self.reason}: {self.message} ({self.count} events)"


def _present(value: str) -> bool:
    return bool(value) and value != FIELD_EMPTY_VALUE


def _event_count(pieces: dict[str, str]) -> int:
    raw = pieces[".count"]
    if not _present(raw):
        match = _SERIES_COUNT.search(pieces[".series"]) if _present(pieces[".series"]) else None
        if match:
            raw = match.group(1)
        elif _present(pieces[".deprecatedCount"]):
            raw = pieces[".deprecatedCount"]
        else:
            raw = "1"
    try:
        return int(raw)
    except ValueError:
        return 1


def _event_timestamp(pieces: dict[str, str]) -> str:
    if _present(pieces[".lastTimestamp"]):
        return pieces[".lastTimestamp"]
    match = _SERIES_LAST_OBSERVED.search(pieces[".series"]) if _present(pieces[".series"]) else None
    if match:
        return match.group(1)
    if _present(pieces[".deprecatedLastTimestamp"]):
        return pieces[".deprecatedLastTimestamp"]
    return pieces[".eventTime"]


def parse_events(blob: str) -> list[Event]:
    """Split the rendered go-template output into events.

    Entries with too few fields or no parseable timestamp are skipped.
    """
    events: list[Event] = []
    for chunk in blob.split(EVENT_SEPARATOR):
        if not chunk.strip():
            continue
        values = chunk.split(FIELD_SEPARATOR, len(FIELDS) - 1)
        if len(values) != len(FIELDS):
            _logger.debug("event_malformed", fields=len(values))
            continue
        pieces = dict(zip(FIELDS, values, strict=True))
        try:
            timestamp = datetime.fromisoformat(_event_timestamp(pieces))
        except ValueError:
            _logger.debug("event_timestamp_unparseable", reason=pieces[".reason"])
            continue
        events.append(
            Event(
                subject_kind=pieces[".involvedObject.kind"],
                subject_name=pieces[".involvedObject.name"],
                last_timestamp=timestamp,
                reason=pieces[".reason"],
                message=pieces[".message"].replace("\n", ""),
                count=_event_count(pieces),
            )
        )
    return events
