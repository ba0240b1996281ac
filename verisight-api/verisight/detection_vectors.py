import re
from typing import Dict, List, Optional, Pattern, Sequence, Tuple

from verisight.schemas import AnomalyFinding

# Fixed UI slots, in display order. Aliases are regex fragments matched as whole words
# against the lowercased category.
CANONICAL_VECTORS: List[Tuple[str, Tuple[str, ...]]] = [
    ("Deepfake/Identity Swap", ("deepfakes?", "identity", r"face[- ]?swap\w*")),
    ("AI Voice/TTS", (r"voice\w*", "tts", "text-to-speech", "speech synthesis")),
    ("Lip-Sync", ("lip[- ]?sync", "lip movements?")),
    ("Generative AI", ("generative", "ai[- ]generated", "synthetic", "diffusion")),
    ("Puppetry", (r"puppet\w*", "reenactment")),
    ("Morphing", (r"morph\w*", r"warp\w*")),
    ("Lighting/Shadows", ("lighting", "shadows?", "reflections?", "illumination")),
    ("Splicing", (r"splic\w*", r"composit\w*", "insertion")),
    ("Speed Artifacts", ("speed", "frame ?rate", "temporal", "jitter")),
    ("Metadata/Text", ("metadata", "text", "watermarks?", "ocr")),
]

VECTOR_LABELS: List[str] = [label for label, _ in CANONICAL_VECTORS]

_ALIAS_PATTERNS: List[Tuple[str, Pattern[str]]] = [
    (label, re.compile(r"\b(?:" + "|".join(aliases) + r")\b"))
    for label, aliases in CANONICAL_VECTORS
]

DEFAULT_DETAIL = "No anomalies detected."


def match_vector(category: str) -> Optional[str]:
    """Canonical label for a finding category, or None when it fits no slot."""
    lowered = category.strip().lower()
    for label in VECTOR_LABELS:
        if lowered == label.lower():
            return label
    for label, pattern in _ALIAS_PATTERNS:
        if pattern.search(lowered):
            return label
    return None


def sort_findings(findings: Sequence[AnomalyFinding]) -> List[AnomalyFinding]:
    """Canonical order first; unmatched categories keep their relative order at the end."""
    def rank(item: Tuple[int, AnomalyFinding]) -> Tuple[int, int]:
        position, finding = item
        label = match_vector(finding.category)
        return (VECTOR_LABELS.index(label) if label else len(VECTOR_LABELS), position)

    return [finding for _, finding in sorted(enumerate(findings), key=rank)]


def align_findings(findings: Sequence[AnomalyFinding]) -> List[AnomalyFinding]:
    """
    Exactly one finding per canonical vector, in display order.
    Slots the model didn't report on default to PASS. When several findings map to
    the same slot the most severe one wins.
    """
    severity = {"PASS": 0, "WARN": 1, "FAIL": 2}
    slots: Dict[str, AnomalyFinding] = {}
    for finding in findings:
        label = match_vector(finding.category)
        if label is None:
            continue
        current = slots.get(label)
        if current is None or severity[finding.status] > severity[current.status]:
            slots[label] = finding

    return [
        slots.get(label) or AnomalyFinding(category=label, confidence=100, detail=DEFAULT_DETAIL, status="PASS")
        for label in VECTOR_LABELS
    ]
