"""Turn extracted display text into a typed pump reading.

Classification is pure: the same extraction and timestamp always give the
same reading, and nothing is logged or stored here. Every reading carries a
reason code in ``notes`` so that discarded or doubtful readings can be
audited later.
"""

from __future__ import annotations

import re

from pump_models import PumpReading, PumpStatus, utc_now

# Reason codes recorded in PumpReading.notes
REASON_KEYWORD = "keyword_match"
REASON_IN_BAND = "in_normal_band"
REASON_OUTSIDE_BAND = "outside_normal_band"
REASON_HIGH_CURRENT = "high_current"
REASON_BELOW_OFF = "below_off_threshold"
REASON_BELOW_IDLE = "below_idle_threshold"
REASON_EMPTY = "empty_text"
REASON_UNPARSEABLE = "unparseable"
REASON_IMPLAUSIBLE = "implausible_current"
REASON_LOW_CONFIDENCE = "low_confidence"

_NUMBER_RE = re.compile(r"(\d+(?:[.,]\d+)?)")


def normalize_text(text, case_sensitive=False):
    text = (text or "").strip()
    return text if case_sensitive else text.casefold()


def match_keyword(text, keywords, case_sensitive=False):
    """Return the first keyword contained in text, or None."""
    haystack = normalize_text(text, case_sensitive)
    for keyword in keywords:
        needle = normalize_text(keyword, case_sensitive)
        if needle and needle in haystack:
            return keyword
    return None


def parse_leading_number(text):
    match = _NUMBER_RE.search(text or "")
    if not match:
        return None
    try:
        return float(match.group(1).replace(",", "."))
    except ValueError:
        return None


class ReadingClassifier:
    def __init__(self, settings_source):
        self._settings = settings_source

    def classify(self, extraction, timestamp=None):
        settings = self._settings.current()
        rules = settings["classification"]
        minimum_confidence = float(settings["ocr"]["minimum_confidence"])
        case_sensitive = rules["case_sensitive"]

        raw_text = extraction.text or ""
        reading = PumpReading(
            timestamp_utc=timestamp or utc_now(),
            status=PumpStatus.UNKNOWN,
            current_amps=None,
            raw_text=raw_text,
            confidence=float(extraction.confidence),
            is_valid=False,
            backend=extraction.backend.value if extraction.backend else None,
        )

        text = raw_text.strip()
        if not text:
            reading.notes = REASON_EMPTY
            return reading

        # Dry first: a dry well must never be hidden behind a cycling keyword
        if match_keyword(text, rules["dry_keywords"], case_sensitive):
            reading.status = PumpStatus.DRY
            reading.notes = REASON_KEYWORD
        elif match_keyword(text, rules["rapid_cycle_keywords"], case_sensitive):
            reading.status = PumpStatus.RAPID_CYCLE
            reading.notes = REASON_KEYWORD
        else:
            value = parse_leading_number(text)
            if value is None:
                reading.notes = REASON_UNPARSEABLE
                return reading
            if value > float(rules["max_valid_current"]):
                reading.notes = REASON_IMPLAUSIBLE
                return reading
            reading.status, reading.notes = self._status_for_current(value, rules)
            reading.current_amps = value

        reading.is_valid = True
        if reading.confidence < minimum_confidence:
            reading.is_valid = False
            reading.notes = f"{reading.notes},{REASON_LOW_CONFIDENCE}"
        return reading

    @staticmethod
    def _status_for_current(value, rules):
        if value < float(rules["off_threshold"]):
            return PumpStatus.OFF, REASON_BELOW_OFF
        if value < float(rules["idle_threshold"]):
            return PumpStatus.IDLE, REASON_BELOW_IDLE
        if value > float(rules["high_current_threshold"]):
            return PumpStatus.NORMAL, REASON_HIGH_CURRENT
        if float(rules["normal_min"]) <= value <= float(rules["normal_max"]):
            return PumpStatus.NORMAL, REASON_IN_BAND
        return PumpStatus.NORMAL, REASON_OUTSIDE_BAND

    def failed(self, error, timestamp=None):
        """Reading recorded when no backend produced any text."""
        kind = getattr(error, "kind", "error")
        return PumpReading(
            timestamp_utc=timestamp or utc_now(),
            status=PumpStatus.UNKNOWN,
            current_amps=None,
            raw_text="",
            confidence=0.0,
            is_valid=False,
            notes=f"extraction_{kind}",
        )
