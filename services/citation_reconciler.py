"""
Citation reconciliation for generated lessons.

The model is shown sources labelled [1]..[k]; the stored list is 0-indexed.
This module is the only place that translates between the two.
"""

import re
from typing import Dict, Optional, Sequence, Set

from models.course_models import Citation

MARKER_RE = re.compile(r"\[(\d+)\]")


def find_markers(text: str) -> Set[int]:
    """Distinct integer markers of the form [N] in text"""
    if not text:
        return set()
    return {int(match) for match in MARKER_RE.findall(text)}


def reconcile_citations(
    text: str,
    sources: Optional[Sequence[Citation]]
) -> Optional[Dict[int, str]]:
    """
    Map each marker actually used in text to its source url.

    Markers outside 1..len(sources) are dropped. Returns None, never an empty
    dict, when there is nothing to decorate.
    """
    if not sources:
        return None

    used: Dict[int, str] = {}
    for marker in sorted(find_markers(text)):
        position = marker - 1
        if 0 <= position < len(sources):
            used[marker] = sources[position].url

    return used or None
