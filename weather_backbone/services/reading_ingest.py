from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any

from jsonschema import Draft202012Validator
from sqlalchemy.orm import Session

from weather_backbone.repositories.weather_store import append_raw_reading
from weather_backbone.services.field_aliases import FIELD_ALIASES, as_number, resolve_number

_logger = logging.getLogger("weather_backbone.ingest")

_NULLABLE_NUMBER = {"type": ["number", "null"]}

READING_PAYLOAD_SCHEMA: dict[str, Any] = {
    "type": "object",
    "required": ["timestamp"],
    "properties": {
        "timestamp": {"type": "number", "minimum": 0},
        **{alias: _NULLABLE_NUMBER for aliases in FIELD_ALIASES.values() for alias in aliases},
    },
}

_VALIDATOR = Draft202012Validator(READING_PAYLOAD_SCHEMA)


@dataclass
class IngestResult:
    stored: int = 0
    rejected: int = 0
    errors: list[str] = field(default_factory=list)


def payload_errors(payload: Any) -> list[str]:
    errors = sorted(_VALIDATOR.iter_errors(payload), key=lambda item: list(item.path))
    messages = []
    for error in errors:
        path = ".".join(str(part) for part in error.path)
        messages.append(f"{path or '$'}: {error.message}")
    return messages


def ingest_payloads(db: Session, payloads: Iterable[Mapping[str, Any]]) -> IngestResult:
    """Append device payloads as raw readings and commit once.

    Legacy field names are resolved into the canonical columns; the original
    keys are kept in ``extra_json``. Payloads failing the schema are skipped.
    """
    result = IngestResult()
    for index, payload in enumerate(payloads):
        errors = payload_errors(payload)
        if errors:
            result.rejected += 1
            result.errors.extend(f"[{index}] {message}" for message in errors)
            _logger.warning("anomaly rejected reading payload index=%s errors=%s", index, errors)
            continue

        extra = {
            key: value
            for key, value in payload.items()
            if key != "timestamp" and key not in FIELD_ALIASES
        }
        append_raw_reading(
            db,
            ts_ms=int(as_number(payload["timestamp"]) or 0),
            temperature=resolve_number(payload, "temperature"),
            humidity=resolve_number(payload, "humidity"),
            rainfall_rate=resolve_number(payload, "rainfall_rate"),
            rainfall_cumulative=resolve_number(payload, "rainfall_cumulative"),
            extra=extra,
        )
        result.stored += 1
    db.commit()
    return result
