"""
Deterministic alert and timer identifiers.

Every identifier is composed from values the caller already holds, so
cancellation works by prefix without a side index:

    {med}/                      medication scope
    {med}/d{day}/t{slot}        dose id, also the base reminder id
    {med}/d{day}/t{slot}/f{n}   pre-scheduled follow-up, level n
    {med}/d{day}/t{slot}/p{n}   reconciliation reminder, level n
    {med}/d{day}/t{slot}/n      one-shot nudge for non-critical doses
    {med}/d{day}/t{slot}/s      snooze
    {med}/d{day}/t{slot}/tick   reconciliation timer (also /ceiling, /missed, /open)

The medication id is percent-encoded with no safe characters, so it never
contains "/" and one medication's scope can't be a prefix of another's.
Scopes always end in "/" for the same reason ("d1/" vs "d10/").
"""

import re
from typing import Optional, Tuple
from urllib.parse import quote, unquote


SEP = "/"

FOLLOW_UP = "f"
PERSISTENT = "p"
NUDGE = "n"
SNOOZE = "s"

TICK = "tick"
CEILING = "ceiling"
MISSED = "missed"
WINDOW_OPEN = "open"

_DOSE_RE = re.compile(r"^([^/]+)/d(\d+)/t(\d+)$")
_SCHEDULED_RE = re.compile(r"^[^/]+/d\d+/t\d+(/f\d+)?$")


def encode_medication_id(medication_id: str) -> str:
    return quote(str(medication_id), safe="")


def medication_scope(medication_id: str) -> str:
    return encode_medication_id(medication_id) + SEP


def dose_id(medication_id: str, day_offset: int, slot: int) -> str:
    return f"{medication_scope(medication_id)}d{day_offset}{SEP}t{slot}"


def dose_scope(dose_identifier: str) -> str:
    return dose_identifier + SEP


def follow_up_id(dose_identifier: str, level: int) -> str:
    return f"{dose_scope(dose_identifier)}{FOLLOW_UP}{level}"


def persistent_id(dose_identifier: str, level: int) -> str:
    return f"{dose_scope(dose_identifier)}{PERSISTENT}{level}"


def nudge_id(dose_identifier: str) -> str:
    return dose_scope(dose_identifier) + NUDGE


def snooze_id(dose_identifier: str) -> str:
    return dose_scope(dose_identifier) + SNOOZE


def timer_key(dose_identifier: str, kind: str) -> str:
    return dose_scope(dose_identifier) + kind


def parse_dose_id(identifier: str) -> Optional[Tuple[str, int, int]]:
    """Recover (medication_id, day_offset, slot) from a dose id."""
    m = _DOSE_RE.match(identifier)
    if not m:
        return None
    return unquote(m.group(1)), int(m.group(2)), int(m.group(3))


def owning_dose_id(identifier: str) -> Optional[str]:
    """Dose id for any identifier at or below dose scope."""
    parts = identifier.split(SEP)
    if len(parts) < 3:
        return None
    candidate = SEP.join(parts[:3])
    return candidate if _DOSE_RE.match(candidate) else None


def medication_id_of(identifier: str) -> str:
    return unquote(identifier.split(SEP, 1)[0])


def is_scheduled_alert(identifier: str) -> bool:
    """Base reminder or pre-scheduled follow-up, the ids a schedule batch owns."""
    return bool(_SCHEDULED_RE.match(identifier))
