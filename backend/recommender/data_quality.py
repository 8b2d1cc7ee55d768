"""
Data-quality gate for snapshot event files.

Every offline job calls check_snapshot_events() before touching the data.
It logs a field-by-field report (missing counts, invalid counts with sample
values, duplicate keys) and raises ValidationError if anything is off, so a
bad export can never produce a partial model.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, FrozenSet, List, Optional
import json
import logging
import math

from backend.recommender.errors import ValidationError
from backend.recommender.snapshot import IMPRESSIONS_FILE, SWIPES_FILE

logger = logging.getLogger(__name__)

MAX_INVALID_EXAMPLES = 3
MAX_DUPLICATE_SAMPLES = 20


def _is_number(value: Any) -> bool:
    if isinstance(value, bool):
        return False
    if isinstance(value, (int, float)):
        return math.isfinite(value)
    if isinstance(value, str) and value.strip():
        try:
            return math.isfinite(float(value))
        except ValueError:
            return False
    return False


def _is_string(value: Any) -> bool:
    if isinstance(value, bool):
        return False
    return (isinstance(value, str) and value.strip() != "") or isinstance(value, (int, float))


TYPE_CHECKS: Dict[str, Callable[[Any], bool]] = {
    "number": _is_number,
    "number_or_null": lambda v: v is None or _is_number(v),
    "string": _is_string,
    "string_or_null": lambda v: v is None or _is_string(v),
    "timestamp": _is_number,
}


def is_missing(value: Any) -> bool:
    return value is None or (isinstance(value, str) and value.strip() == "")


@dataclass(frozen=True)
class FieldRule:
    required: bool
    type: str
    allowed: Optional[FrozenSet[str]] = None


@dataclass(frozen=True)
class EventSpec:
    name: str
    file: str
    required: bool
    key_field: str
    fields: Dict[str, FieldRule]


SWIPE_ACTIONS = frozenset({"like", "skip"})

EVENT_SPECS: List[EventSpec] = [
    EventSpec(
        name="swipe",
        file=SWIPES_FILE,
        required=True,
        key_field="event_id",
        fields={
            "event_id": FieldRule(True, "string"),
            "session_id": FieldRule(True, "string"),
            "deck_id": FieldRule(True, "string"),
            "movie_id": FieldRule(True, "string"),
            "action": FieldRule(True, "string", SWIPE_ACTIONS),
            "ts_ms": FieldRule(True, "timestamp"),
            "dwell_ms": FieldRule(False, "number_or_null"),
            "request_id": FieldRule(False, "string_or_null"),
        },
    ),
    EventSpec(
        name="impression",
        file=IMPRESSIONS_FILE,
        required=False,
        key_field="impression_id",
        fields={
            "impression_id": FieldRule(True, "string"),
            "deck_id": FieldRule(True, "string"),
            "session_id": FieldRule(True, "string"),
            "movie_id": FieldRule(True, "string"),
            "rank": FieldRule(True, "number"),
            "reason_code": FieldRule(True, "string"),
            "ts_ms": FieldRule(True, "timestamp"),
            "model_version": FieldRule(False, "string_or_null"),
            "score": FieldRule(False, "number_or_null"),
            "request_id": FieldRule(False, "string_or_null"),
        },
    ),
]


@dataclass
class FieldStats:
    missing: int = 0
    invalid: int = 0
    invalid_examples: List[Any] = field(default_factory=list)

    def add_invalid(self, value: Any) -> None:
        self.invalid += 1
        if len(self.invalid_examples) < MAX_INVALID_EXAMPLES:
            self.invalid_examples.append(value)


@dataclass
class SpecStats:
    total: int
    fields: Dict[str, FieldStats]
    duplicate_total: int = 0
    duplicate_samples: Dict[str, int] = field(default_factory=dict)
    missing_key: int = 0


def summarize_rows(rows: List[Dict[str, Any]], spec: EventSpec) -> SpecStats:
    stats = SpecStats(total=len(rows), fields={name: FieldStats() for name in spec.fields})
    key_counts: Dict[str, int] = {}

    for row in rows:
        for name, rule in spec.fields.items():
            value = row.get(name)
            fs = stats.fields[name]
            if is_missing(value):
                if rule.required:
                    fs.missing += 1
                continue
            if not TYPE_CHECKS[rule.type](value):
                fs.add_invalid(value)
            elif rule.allowed is not None and str(value) not in rule.allowed:
                fs.add_invalid(value)

        key = row.get(spec.key_field)
        if is_missing(key):
            stats.missing_key += 1
            continue
        k = str(key)
        key_counts[k] = key_counts.get(k, 0) + 1
        if key_counts[k] >= 2:
            stats.duplicate_total += 1
            stats.duplicate_samples[k] = key_counts[k]

    return stats


def _rate(count: int, total: int) -> str:
    if total == 0:
        return "0.00%"
    return f"{count / total * 100:.2f}%"


def log_spec_result(spec: EventSpec, stats: SpecStats) -> None:
    logger.info("[DQ] %s (%d rows)", spec.file, stats.total)
    for name in spec.fields:
        fs = stats.fields[name]
        messages = []
        if fs.missing:
            messages.append(f"missing {fs.missing} ({_rate(fs.missing, stats.total)})")
        if fs.invalid:
            example = f" e.g. {json.dumps(fs.invalid_examples[0])}" if fs.invalid_examples else ""
            messages.append(f"invalid {fs.invalid}{example}")
        if messages:
            logger.warning("[DQ]   %s: %s", name, "; ".join(messages))
        else:
            logger.info("[DQ]   %s: ok", name)

    if stats.duplicate_total:
        samples = sorted(stats.duplicate_samples.items(), key=lambda kv: kv[1], reverse=True)
        sample_txt = ", ".join(f"{k} ({n})" for k, n in samples[:MAX_DUPLICATE_SAMPLES])
        logger.warning(
            "[DQ]   duplicates: %d rows (%s); samples: %s",
            stats.duplicate_total, _rate(stats.duplicate_total, stats.total), sample_txt,
        )
    else:
        logger.info("[DQ]   duplicates: 0 rows")


def check_snapshot_events(snapshot_dir: Path | str) -> Dict[str, SpecStats]:
    """Validate every event file in the snapshot; raises ValidationError listing all failures."""
    snapshot_dir = Path(snapshot_dir)
    problems: List[str] = []
    summary: Dict[str, SpecStats] = {}

    for spec in EVENT_SPECS:
        path = snapshot_dir / spec.file
        if not path.exists():
            if spec.required:
                logger.error("[DQ] missing file %s (required)", spec.file)
                problems.append(f"missing file {spec.file}")
            else:
                logger.warning("[DQ] missing file %s; skipping optional spec", spec.file)
            continue

        try:
            with open(path, "r", encoding="utf-8") as f:
                rows = json.load(f)
        except json.JSONDecodeError:
            problems.append(f"{spec.file}: invalid JSON")
            continue

        if not isinstance(rows, list) or not all(isinstance(r, dict) for r in rows):
            problems.append(f"{spec.file}: expected an array of event objects")
            continue

        if not rows and spec.required:
            logger.warning("[DQ] %s is empty; metrics will not be meaningful", spec.file)

        stats = summarize_rows(rows, spec)
        log_spec_result(spec, stats)

        for name, rule in spec.fields.items():
            fs = stats.fields[name]
            if rule.required and fs.missing:
                problems.append(f"{spec.file}: {name} missing in {fs.missing} rows")
            if fs.invalid:
                problems.append(f"{spec.file}: {name} invalid in {fs.invalid} rows")
        if stats.duplicate_total:
            problems.append(f"{spec.file}: {stats.duplicate_total} duplicate keys")

        summary[spec.name] = stats

    if problems:
        raise ValidationError(problems)
    return summary
