"""
Zone resolution

Matches a destination address to the best shipping zone. Pure functions,
no I/O: the caller supplies the active zones.

Scoring among eligible zones:
- +10 country matched (always)
- +20 zone restricts states and the input state matched
- +30 zone restricts postal codes and a pattern matched
- +5  zone serves exactly one country

Highest score wins, ties keep the first zone seen. This is what lets a
country-wide catch-all zone coexist with a narrower postal-range zone.
"""
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import FrozenSet, Iterable, List, Optional, Tuple

from app.core.exceptions import QuoteValidationError, ZoneNotFoundError

logger = logging.getLogger(__name__)

SCORE_COUNTRY = 10
SCORE_STATE = 20
SCORE_POSTAL = 30
SCORE_SINGLE_COUNTRY = 5


class PostalPatternKind(str, Enum):
    EXACT = "EXACT"
    RANGE = "RANGE"
    PREFIX = "PREFIX"


@dataclass(frozen=True)
class PostalPattern:
    """
    One postal constraint of a zone.

    EXACT compares case-insensitively. RANGE compares integers inclusively and
    falls back to a prefix compare against ``low`` when either side is not
    numeric. PREFIX matches codes starting with ``value``.
    """
    kind: PostalPatternKind
    value: str
    high: Optional[str] = None

    @classmethod
    def exact(cls, code: str) -> "PostalPattern":
        return cls(PostalPatternKind.EXACT, code)

    @classmethod
    def range(cls, low: str, high: str) -> "PostalPattern":
        return cls(PostalPatternKind.RANGE, low, high)

    @classmethod
    def prefix(cls, prefix: str) -> "PostalPattern":
        return cls(PostalPatternKind.PREFIX, prefix)

    @classmethod
    def parse(cls, raw: str) -> "PostalPattern":
        """Parse the stored form: "100*" prefix, "10000-19999" range, else exact."""
        raw = raw.strip()
        if raw.endswith("*"):
            return cls.prefix(raw[:-1])
        if "-" in raw:
            low, _, high = raw.partition("-")
            if low and high:
                return cls.range(low.strip(), high.strip())
        return cls.exact(raw)

    def matches(self, postal_code: str) -> bool:
        code = postal_code.strip().upper()
        if self.kind == PostalPatternKind.EXACT:
            return code == self.value.strip().upper()
        if self.kind == PostalPatternKind.PREFIX:
            return code.startswith(self.value.strip().upper())

        low = self.value.strip().upper()
        try:
            return int(low) <= int(code) <= int(self.high or "")
        except ValueError:
            return code.startswith(low)

    def __str__(self) -> str:
        if self.kind == PostalPatternKind.PREFIX:
            return f"{self.value}*"
        if self.kind == PostalPatternKind.RANGE:
            return f"{self.value}-{self.high}"
        return self.value


@dataclass(frozen=True)
class ZoneDefinition:
    """A destination region. Empty states/postal patterns mean "any"."""
    id: int
    name: str
    code: str
    countries: FrozenSet[str]
    states_provinces: FrozenSet[str] = frozenset()
    postal_patterns: Tuple[PostalPattern, ...] = field(default_factory=tuple)

    def __post_init__(self):
        if not self.countries:
            raise ValueError(f"Zone {self.code} must serve at least one country")
        # Normalize so lookups can compare upper-case strings directly
        object.__setattr__(self, "countries", frozenset(c.strip().upper() for c in self.countries))
        object.__setattr__(self, "states_provinces", frozenset(s.strip().upper() for s in self.states_provinces))
        object.__setattr__(self, "postal_patterns", tuple(self.postal_patterns))

    @classmethod
    def from_strings(
        cls,
        id: int,
        name: str,
        code: str,
        countries: Iterable[str],
        states_provinces: Iterable[str] = (),
        postal_patterns: Iterable[str] = (),
    ) -> "ZoneDefinition":
        """Build a zone from the persisted string representation."""
        return cls(
            id=id,
            name=name,
            code=code,
            countries=frozenset(countries),
            states_provinces=frozenset(states_provinces),
            postal_patterns=tuple(PostalPattern.parse(p) for p in postal_patterns if p and p.strip()),
        )


def score_zone(
    zone: ZoneDefinition,
    country: str,
    state: Optional[str] = None,
    postal_code: Optional[str] = None,
) -> Optional[int]:
    """
    Score one zone against an address.

    Returns None when the zone is not eligible.
    """
    country = country.strip().upper()
    if country not in zone.countries:
        return None

    score = SCORE_COUNTRY

    if zone.states_provinces:
        if not state or state.strip().upper() not in zone.states_provinces:
            return None
        score += SCORE_STATE

    if zone.postal_patterns:
        if not postal_code or not any(p.matches(postal_code) for p in zone.postal_patterns):
            return None
        score += SCORE_POSTAL

    if len(zone.countries) == 1:
        score += SCORE_SINGLE_COUNTRY

    return score


def resolve_zone(
    country: str,
    state: Optional[str],
    postal_code: Optional[str],
    zones: Iterable[ZoneDefinition],
) -> ZoneDefinition:
    """
    Return the best-matching zone for an address.

    Raises:
        QuoteValidationError: country is empty
        ZoneNotFoundError: no zone covers the address
    """
    if not country or not country.strip():
        raise QuoteValidationError("Destination country is required")

    best: Optional[ZoneDefinition] = None
    best_score = -1
    for zone in zones:
        score = score_zone(zone, country, state, postal_code)
        if score is not None and score > best_score:
            best, best_score = zone, score

    if best is None:
        raise ZoneNotFoundError(
            f"No shipping zone found for {country}/{state or '-'}/{postal_code or '-'}",
            country=country,
            state=state,
            postal_code=postal_code,
        )

    logger.debug(f"Resolved zone {best.code} (score={best_score}) for {country}/{state}/{postal_code}")
    return best


def list_matching_zones(
    country: str,
    state: Optional[str],
    postal_code: Optional[str],
    zones: Iterable[ZoneDefinition],
) -> List[Tuple[ZoneDefinition, int]]:
    """All eligible zones with their scores, best first (stable on ties)."""
    scored = []
    for zone in zones:
        score = score_zone(zone, country, state, postal_code)
        if score is not None:
            scored.append((zone, score))
    scored.sort(key=lambda item: -item[1])
    return scored
