# Overview: Pure conversion of supplier payloads into canonical serial/PIN pairs.

"""
Supplier Response Normalizer

WHY: Suppliers answer in several shapes: bare string arrays, objects with
historical field names, and typed "deliverables" where the serial and its
PIN arrive as two separate records. Everything downstream works with one
shape, DeliverablePair.

DESIGN:
- Each raw record is classified ONCE into a closed set of variants
  (StringRecord, LegacyKeyedRecord, TypedDeliverable). Field probing lives
  only in this module.
- Pairs are deduplicated by serial value; PIN-only pairs by PIN.
- Records yielding neither serial nor PIN are dropped and reported.
- normalize_detailed is pure (no I/O, no logging). normalize() is the
  convenience wrapper that logs dropped records.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Union


logger = logging.getLogger(__name__)


# Keys searched (in order) for the record array of a dict payload
ARRAY_KEYS = ("deliverables", "serial_numbers", "serials", "data", "codes", "cards", "items")

LEGACY_SERIAL_FIELDS = (
    "serialNumber", "serial", "serial_number", "code", "cardCode",
    "Serial", "Code", "value", "sn", "cardNumber",
)
LEGACY_PIN_FIELDS = ("pin", "pin_code", "secret", "cardPin", "Pin", "pincode", "password")

TYPED_SERIAL_FIELDS = ("serial", "serial_number", "code", "cardCode")
TYPED_PIN_FIELDS = ("pin", "pin_code", "secret", "cardPin")
EXTRA_PIN_FIELDS = ("pin", "pin_code")
EXTRA_SERIAL_FIELDS = ("serialNumber", "serial", "serial_number", "code")

PIN_PREFIX = "PIN-"

TYPE_SERIAL = "serial"
TYPE_PIN = "pin"


@dataclass(frozen=True)
class DeliverablePair:
    serial_number: str
    pin: str | None = None

    @property
    def is_pin_only(self) -> bool:
        return not self.serial_number

    @property
    def code(self) -> str:
        """Identifier used for storage: the serial, or the PIN for PIN-only cards."""
        return self.serial_number or (self.pin or "")

    def to_dict(self) -> dict:
        return {"serialNumber": self.serial_number, "pin": self.pin}


# =============================================================================
# RAW RECORD VARIANTS
# =============================================================================

@dataclass(frozen=True)
class StringRecord:
    value: str


@dataclass(frozen=True)
class LegacyKeyedRecord:
    fields: dict


@dataclass(frozen=True)
class TypedDeliverable:
    type: str
    key: str | None
    value: str | None
    extra: dict
    raw: dict


RawRecord = Union[StringRecord, LegacyKeyedRecord, TypedDeliverable]


@dataclass(frozen=True)
class DroppedRecord:
    raw: Any
    reason: str


@dataclass
class NormalizationResult:
    pairs: list[DeliverablePair] = field(default_factory=list)
    dropped: list[DroppedRecord] = field(default_factory=list)


def _text(value: Any) -> str | None:
    """Stringify scalar values; containers, bools, and blanks become None."""
    if value is None or isinstance(value, (bool, dict, list, tuple)):
        return None
    text = str(value).strip()
    return text or None


def _first(source: dict, names) -> str | None:
    for name in names:
        text = _text(source.get(name))
        if text:
            return text
    return None


def classify_record(raw: Any) -> RawRecord | None:
    """Map one raw supplier record onto its variant, or None if unusable."""
    if isinstance(raw, bool):
        return None
    if isinstance(raw, (str, int, float)):
        text = _text(raw)
        return StringRecord(text) if text else None
    if not isinstance(raw, dict):
        return None

    record_type = raw.get("type")
    if isinstance(record_type, str) and record_type.lower() in (TYPE_SERIAL, TYPE_PIN):
        extra = raw.get("extra") if isinstance(raw.get("extra"), dict) else {}
        key = raw.get("key") if isinstance(raw.get("key"), str) else None
        value = _text(raw.get("value"))
        if value is None and key:
            # Keys without values: the value may sit under the field the key names
            value = _text(raw.get(key)) or _text(extra.get(key))
        return TypedDeliverable(
            type=record_type.lower(),
            key=key,
            value=value,
            extra=extra,
            raw=raw,
        )
    return LegacyKeyedRecord(raw)


def extract_records(payload: Any) -> list:
    """Locate the record array inside a supplier payload."""
    if payload is None:
        return []
    if isinstance(payload, list):
        return payload
    if not isinstance(payload, dict):
        return []

    for key in ARRAY_KEYS:
        value = payload.get(key)
        if isinstance(value, list) and value:
            return value
        if isinstance(value, dict):
            nested = extract_records(value)
            if nested:
                return nested

    for value in payload.values():
        if isinstance(value, list) and value:
            return value
    return []


# =============================================================================
# PAIRING
# =============================================================================

class _PairBook:
    """Insertion-ordered pairs keyed by serial (or PIN for PIN-only entries)."""

    def __init__(self):
        self._entries: dict[str, list] = {}

    def add(self, serial: str | None, pin: str | None) -> bool:
        if serial:
            entry = self._entries.get(serial)
            if entry is None:
                self._entries[serial] = [serial, pin]
            elif not entry[1] and pin:
                entry[1] = pin
            return True
        if pin:
            self._entries.setdefault(f"\x00pin:{pin}", ["", pin])
            return True
        return False

    def pairs(self) -> list[DeliverablePair]:
        return [DeliverablePair(serial, pin or None) for serial, pin in self._entries.values()]


def _legacy_fields(record: LegacyKeyedRecord) -> tuple[str | None, str | None]:
    fields = record.fields
    serial = _first(fields, LEGACY_SERIAL_FIELDS)
    pin = _first(fields, LEGACY_PIN_FIELDS)
    if pin is None and isinstance(fields.get("extra"), dict):
        pin = _first(fields["extra"], EXTRA_PIN_FIELDS)
    return _repair_pin_in_serial(serial, pin)


def _repair_pin_in_serial(serial: str | None, pin: str | None) -> tuple[str | None, str | None]:
    # PIN-only products sometimes put the PIN in the serial slot
    if serial and not pin and serial.upper().startswith(PIN_PREFIX):
        return None, serial
    return serial, pin


def _typed_serial(record: TypedDeliverable) -> tuple[str | None, str | None]:
    serial = record.value or _first(record.raw, TYPED_SERIAL_FIELDS)
    pin = _first(record.extra, EXTRA_PIN_FIELDS) or _text(record.raw.get("pin"))
    return serial, pin


def _typed_pin(record: TypedDeliverable) -> tuple[str | None, str | None]:
    pin = record.value or _first(record.raw, TYPED_PIN_FIELDS)
    serial = _first(record.extra, EXTRA_SERIAL_FIELDS)
    return serial, pin


def normalize_detailed(payload: Any) -> NormalizationResult:
    """
    Convert a supplier payload into deduplicated DeliverablePairs.

    Typed serial records are paired first, then typed PIN records are matched
    to them through extra.serialNumber; string and legacy records follow in
    input order.
    """
    result = NormalizationResult()
    book = _PairBook()

    classified = []
    for raw in extract_records(payload):
        record = classify_record(raw)
        if record is None:
            result.dropped.append(DroppedRecord(raw, "unrecognized record"))
        else:
            classified.append((raw, record))

    typed_serials = [(raw, r) for raw, r in classified if isinstance(r, TypedDeliverable) and r.type == TYPE_SERIAL]
    typed_pins = [(raw, r) for raw, r in classified if isinstance(r, TypedDeliverable) and r.type == TYPE_PIN]
    others = [(raw, r) for raw, r in classified if not isinstance(r, TypedDeliverable)]

    for raw, record in typed_serials:
        serial, pin = _typed_serial(record)
        if not serial:
            result.dropped.append(DroppedRecord(raw, "serial deliverable without value"))
            continue
        book.add(serial, pin)

    for raw, record in typed_pins:
        serial, pin = _typed_pin(record)
        if not pin:
            result.dropped.append(DroppedRecord(raw, "pin deliverable without value"))
            continue
        book.add(serial, pin)

    for raw, record in others:
        if isinstance(record, StringRecord):
            serial, pin = _repair_pin_in_serial(record.value, None)
        else:
            serial, pin = _legacy_fields(record)
        if not book.add(serial, pin):
            result.dropped.append(DroppedRecord(raw, "no serial or pin field"))

    result.pairs = book.pairs()
    return result


def normalize(payload: Any) -> list[DeliverablePair]:
    result = normalize_detailed(payload)
    for dropped in result.dropped:
        logger.warning("Dropped supplier record (%s): %r", dropped.reason, dropped.raw)
    return result.pairs


def has_unresolved_deliverables(payload: Any) -> bool:
    """True when a typed serial record names a key but carries no value."""
    for raw in extract_records(payload):
        record = classify_record(raw)
        if (
            isinstance(record, TypedDeliverable)
            and record.type == TYPE_SERIAL
            and record.key
            and not _typed_serial(record)[0]
        ):
            return True
    return False
