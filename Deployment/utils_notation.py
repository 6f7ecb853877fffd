import re
from dataclasses import dataclass, field, replace
from enum import Enum
import config_master as config


class Quadrant(Enum):
    """Palmer quadrants. Values are the labels the recognition model emits."""
    UPPER_RIGHT = '右上区 (A区 - UR)'
    UPPER_LEFT = '左上区 (B区 - UL)'
    LOWER_RIGHT = '右下区 (C区 - LR)'
    LOWER_LEFT = '左下区 (D区 - LL)'
    UNKNOWN = '未知'

    @property
    def code(self) -> str:
        return _QUADRANT_ATTRS[self][0]

    @property
    def label(self) -> str:
        return _QUADRANT_ATTRS[self][1]

    @property
    def side(self):
        """'right', 'left' or None for UNKNOWN."""
        return _QUADRANT_ATTRS[self][2]

    @property
    def level(self):
        """'upper', 'lower' or None for UNKNOWN."""
        return _QUADRANT_ATTRS[self][3]

    @classmethod
    def parse(cls, value) -> 'Quadrant':
        """Accepts a member, wire value, code (UR/ul/...) or label; anything else is UNKNOWN."""
        if isinstance(value, cls):
            return value
        if not isinstance(value, str):
            return cls.UNKNOWN
        text = value.strip()
        for quad, (code, label, _, _) in _QUADRANT_ATTRS.items():
            if text in (quad.value, label) or text.upper() == code:
                return quad
        return cls.UNKNOWN


_QUADRANT_ATTRS = {
    Quadrant.UPPER_RIGHT: ('UR', '右上', 'right', 'upper'),
    Quadrant.UPPER_LEFT: ('UL', '左上', 'left', 'upper'),
    Quadrant.LOWER_RIGHT: ('LR', '右下', 'right', 'lower'),
    Quadrant.LOWER_LEFT: ('LL', '左下', 'left', 'lower'),
    Quadrant.UNKNOWN: ('UNKNOWN', '未知', None, None),
}

QUADRANT_ORDER = (
    Quadrant.UPPER_RIGHT, Quadrant.UPPER_LEFT,
    Quadrant.LOWER_RIGHT, Quadrant.LOWER_LEFT,
)

_JAW_SWAP = {
    Quadrant.UPPER_RIGHT: Quadrant.LOWER_RIGHT,
    Quadrant.UPPER_LEFT: Quadrant.LOWER_LEFT,
    Quadrant.LOWER_RIGHT: Quadrant.UPPER_RIGHT,
    Quadrant.LOWER_LEFT: Quadrant.UPPER_LEFT,
}

_MANUAL_INPUT_RE = re.compile(r'[^a-zA-Z0-9\u2160-\u217F]')


def swap_jaw(quadrant: Quadrant) -> Quadrant:
    """Upper <-> lower on the same side. UNKNOWN stays UNKNOWN."""
    return _JAW_SWAP.get(quadrant, quadrant)


#  Symbol table

def _lookup(table: dict, symbol: str):
    return table.get(symbol.upper(), table.get(symbol))

def tooth_name(symbol: str) -> str:
    """Display name of a tooth symbol; unmapped symbols name themselves."""
    name = _lookup(config.TOOTH_NAMES, symbol)
    return name if name is not None else symbol

def tooth_rank(symbol: str) -> int:
    """Ordinal from the midline (1) outward. Unmapped symbols get UNKNOWN_RANK."""
    rank = _lookup(config.TOOTH_ORDINAL, symbol)
    return rank if rank is not None else config.UNKNOWN_RANK

def tooth_description(symbol: str, quadrant: Quadrant) -> str:
    """Single-tooth description, e.g. '右上第一磨牙'."""
    name = _lookup(config.TOOTH_NAMES, symbol) or config.UNKNOWN_TOOTH_NAME
    return f"{Quadrant.parse(quadrant).label}{name}"


#  Quadrant sorter

def clean_quadrant_input(text: str) -> str:
    """Drops anything that is not a latin letter, digit or Roman numeral, then upper-cases."""
    if not text:
        return ""
    return _MANUAL_INPUT_RE.sub('', text).upper()

def sort_quadrant_teeth(text: str, quadrant) -> str:
    """
    Orders the symbols of one quadrant for the chart.

    Right quadrants sit left of the vertical axis and are right-aligned against
    it, so they read distal to mesial (8 -> 1). Left and unknown quadrants read
    mesial to distal (1 -> 8). The sort is stable, so equal ranks keep their
    input order.
    """
    if not text:
        return ""
    descending = Quadrant.parse(quadrant).side == 'right'
    return ''.join(sorted(text, key=tooth_rank, reverse=descending))


#  Findings

@dataclass(frozen=True)
class ToothFinding:
    tooth_number: str
    quadrant: Quadrant
    description: str = ''

    @classmethod
    def create(cls, tooth_number: str, quadrant) -> 'ToothFinding':
        quad = Quadrant.parse(quadrant)
        return cls(tooth_number, quad, tooth_description(tooth_number, quad))

    def corrected(self, tooth_number: str = None, quadrant=None) -> 'ToothFinding':
        """User correction: replaces symbol and/or quadrant and re-resolves the description."""
        number = (tooth_number if tooth_number is not None else self.tooth_number).upper()
        quad = Quadrant.parse(quadrant) if quadrant is not None else self.quadrant
        return ToothFinding.create(number, quad)

    def to_dict(self) -> dict:
        return {
            "toothNumber": self.tooth_number,
            "quadrant": self.quadrant.value,
            "description": self.description,
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'ToothFinding':
        number = str(data.get("toothNumber", "")).strip()
        quad = Quadrant.parse(data.get("quadrant"))
        description = data.get("description") or tooth_description(number, quad)
        return cls(number, quad, description)


def findings_from_quadrants(quadrants: dict) -> list:
    """One finding per symbol of each {UR, UL, LR, LL} string."""
    findings = []
    for quad in QUADRANT_ORDER:
        for symbol in quadrants.get(quad.code) or "":
            findings.append(ToothFinding.create(symbol, quad))
    return findings


#  Description composer

def _finding_key(finding: ToothFinding):
    return tooth_rank(finding.tooth_number), finding.tooth_number

def _render_clause(label: str, group: list) -> str:
    names = [tooth_name(f.tooth_number) for f in sorted(group, key=_finding_key)]
    return f"{label}{config.TOOTH_SEPARATOR.join(names)}"

def generate_combined_description(findings: list) -> str:
    """
    Merges findings into one sentence, e.g. '左上第一磨牙、第二磨牙，右下中切牙'.

    Quadrants are emitted UR, UL, LR, LL, then unknown. Teeth within a quadrant
    always read mesial to distal regardless of side.
    """
    groups = {}
    for finding in findings:
        groups.setdefault(Quadrant.parse(finding.quadrant), []).append(finding)

    parts = []
    for quad in QUADRANT_ORDER:
        if groups.get(quad):
            parts.append(_render_clause(quad.label, groups[quad]))

    for quad, group in groups.items():
        if quad not in QUADRANT_ORDER and group:
            parts.append(_render_clause(config.UNKNOWN_AREA_LABEL, group))

    return config.CLAUSE_SEPARATOR.join(parts)


#  Analysis results

def as_flag(value) -> bool:
    """True only for a real True or the string 'true' (any case)."""
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().lower() == 'true'
    return False

@dataclass
class AnalysisResult:
    findings: list = field(default_factory=list)
    combined_description: str = ''
    missing_horizontal_line: bool = False
    confidence: str = ''
    reasoning: str = ''

    @classmethod
    def from_dict(cls, data: dict) -> 'AnalysisResult':
        findings = [ToothFinding.from_dict(f) for f in data.get("findings") or [] if isinstance(f, dict)]
        return cls(
            findings=findings,
            combined_description=generate_combined_description(findings),
            missing_horizontal_line=as_flag(data.get("missingHorizontalLine", False)),
            confidence=str(data.get("confidence") or ''),
            reasoning=str(data.get("reasoning") or ''),
        )

    def to_dict(self) -> dict:
        return {
            "findings": [f.to_dict() for f in self.findings],
            "combinedDescription": self.combined_description,
            "missingHorizontalLine": self.missing_horizontal_line,
            "confidence": self.confidence,
            "reasoning": self.reasoning,
        }


def apply_jaw_override(result: AnalysisResult, is_lower: bool) -> AnalysisResult:
    """
    Findings without a horizontal line are placed in the upper jaw by default.
    When the user marks them as lower, every quadrant is swapped to the other jaw.
    """
    if not result.missing_horizontal_line or not is_lower:
        return result
    findings = [f.corrected(quadrant=swap_jaw(f.quadrant)) for f in result.findings]
    return replace(
        result,
        findings=findings,
        combined_description=generate_combined_description(findings),
    )

def apply_corrections(result: AnalysisResult, findings: list) -> AnalysisResult:
    """Replaces findings with the user's edit; the jaw question is considered settled."""
    findings = list(findings)
    return replace(
        result,
        findings=findings,
        combined_description=generate_combined_description(findings),
        missing_horizontal_line=False,
    )
