"""Managed sensitive-data detectors used by the local scanner.

Each detector is a regular expression, optionally confirmed by a validator
(the Luhn checksum for card numbers, area/group rules for SSNs). Detectors
belong to a category; the set of categories hit in one object decides the
finding type, and the categories plus occurrence count decide severity.

Example:
    >>> counts = scan_text("contact jane@example.com, card 4111 1111 1111 1111")
    >>> sorted(counts)
    ['CREDIT_CARD_NUMBER', 'EMAIL_ADDRESS']
    >>> classify(counts)
    ('SensitiveData:S3Object/Multiple', <Severity.MEDIUM: 'Medium'>)
"""

from __future__ import annotations

import re
from collections.abc import Callable
from dataclasses import dataclass

from piiwatch.core.models import Severity

PERSONAL = "Personal"
FINANCIAL = "Financial"
CREDENTIALS = "Credentials"

FINDING_TYPE_PREFIX = "SensitiveData:S3Object/"


def luhn_valid(number: str) -> bool:
    """Luhn (mod 10) checksum over the digits of ``number``."""
    digits = [int(c) for c in number if c.isdigit()]
    if len(digits) < 13:
        return False
    total = 0
    for i, digit in enumerate(reversed(digits)):
        if i % 2 == 1:
            digit *= 2
            if digit > 9:
                digit -= 9
        total += digit
    return total % 10 == 0


def _ssn_valid(value: str) -> bool:
    area, group, serial = value.split("-")
    if area in ("000", "666") or area.startswith("9"):
        return False
    return group != "00" and serial != "0000"


@dataclass(frozen=True)
class Detector:
    name: str
    category: str
    pattern: re.Pattern[str]
    validator: Callable[[str], bool] | None = None

    def count(self, text: str) -> int:
        matches = (m.group(0) for m in self.pattern.finditer(text))
        if self.validator is None:
            return sum(1 for _ in matches)
        return sum(1 for m in matches if self.validator(m))


MANAGED_DETECTORS: tuple[Detector, ...] = (
    Detector("EMAIL_ADDRESS", PERSONAL, re.compile(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b")),
    Detector("USA_SOCIAL_SECURITY_NUMBER", PERSONAL, re.compile(r"\b\d{3}-\d{2}-\d{4}\b"), _ssn_valid),
    Detector("PHONE_NUMBER", PERSONAL, re.compile(r"(?<!\d)(?:\+1[ .-]?)?\(?\d{3}\)?[ .-]\d{3}[ .-]\d{4}(?!\d)")),
    Detector("CREDIT_CARD_NUMBER", FINANCIAL, re.compile(r"(?<!\d)\d(?:[ -]?\d){12,18}(?!\d)"), luhn_valid),
    Detector("AWS_CREDENTIALS", CREDENTIALS, re.compile(r"\b(?:AKIA|ASIA)[0-9A-Z]{16}\b")),
)

_CATEGORY_BY_NAME = {d.name: d.category for d in MANAGED_DETECTORS}


def scan_text(text: str, detectors: tuple[Detector, ...] = MANAGED_DETECTORS) -> dict[str, int]:
    """Occurrences per detector name; detectors with no hit are omitted."""
    counts: dict[str, int] = {}
    for detector in detectors:
        n = detector.count(text)
        if n:
            counts[detector.name] = n
    return counts


def classify(counts: dict[str, int]) -> tuple[str, Severity]:
    """Finding type and severity for the detector hits in one object.

    Raises:
        ValueError: ``counts`` is empty (nothing to report)
    """
    if not counts:
        raise ValueError("No detector hits to classify")
    categories = {_CATEGORY_BY_NAME.get(name, PERSONAL) for name in counts}
    suffix = next(iter(categories)) if len(categories) == 1 else "Multiple"
    total = sum(counts.values())

    if CREDENTIALS in categories or total >= 100:
        severity = Severity.HIGH
    elif FINANCIAL in categories or total >= 10:
        severity = Severity.MEDIUM
    else:
        severity = Severity.LOW
    return f"{FINDING_TYPE_PREFIX}{suffix}", severity


__all__ = [
    "PERSONAL",
    "FINANCIAL",
    "CREDENTIALS",
    "Detector",
    "MANAGED_DETECTORS",
    "luhn_valid",
    "scan_text",
    "classify",
]
