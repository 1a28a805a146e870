from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Optional, Tuple


# Order matters: the more specific phrase has to come before the generic one.
DEFAULT_VITAL_TEXT_CODES: Tuple[Tuple[str, str], ...] = (
    ("heart rate", "8867-4"),
    ("pulse", "8867-4"),
    ("systolic blood pressure", "8480-6"),
    ("diastolic blood pressure", "8462-4"),
    ("blood pressure", "8480-6"),
    ("body temperature", "8310-5"),
    ("temperature", "8310-5"),
)


@dataclass(frozen=True)
class FreeTextCodeMap:
    """
    Best-effort lookup from free text ("Heart Rate", "BP - Blood Pressure") to a code.
    Case-insensitive substring match, first entry wins. May mis-map unusual text.
    """

    entries: Tuple[Tuple[str, str], ...] = DEFAULT_VITAL_TEXT_CODES

    @classmethod
    def from_pairs(cls, pairs: Iterable[Tuple[str, str]]) -> "FreeTextCodeMap":
        return cls(entries=tuple((phrase.lower(), code) for phrase, code in pairs))

    def resolve(self, text: Optional[str]) -> Optional[str]:
        if not text:
            return None
        t = text.lower()
        for phrase, code in self.entries:
            if phrase in t:
                return code
        return None
