"""Keyword heuristics that tag a chat message with the profile fields it mentions.

Classification is plain substring containment on a lower-cased copy of the
message. A message may feed several fields at once ("I love coding and won an
award" lands in both ``hobbies`` and ``awards``). The fragment stored for each
matched field is the whole original message; no segmentation is attempted.

Colleges also match a short list of institution names (``MIT``, ``Stanford``)
as whole words.

Known limitation: containment matching produces false positives ("school"
inside "preschool", "honor" inside "honors") and misses paraphrases. Both are
accepted behaviour of the heuristic.
"""

from __future__ import annotations

import re
from typing import Dict, Iterable, List

from storymode.schemas.profile import FieldDefinition, field_definitions
from storymode.utils.logging import get_logger

log = get_logger(__name__)

ClassifierOutput = Dict[str, List[str]]


def matched_keywords(text: str, definition: FieldDefinition) -> List[str]:
    lowered = text.lower()
    hits = [keyword for keyword in definition.keywords if keyword in lowered]
    hits.extend(name for name in definition.names if re.search(rf"\b{re.escape(name)}\b", lowered))
    return hits


def classify_message(
    text: str,
    definitions: Iterable[FieldDefinition] | None = None,
) -> ClassifierOutput:
    if not text or not text.strip():
        return {}

    result: ClassifierOutput = {}
    for definition in (field_definitions() if definitions is None else definitions):
        if matched_keywords(text, definition):
            result[definition.name] = [text]

    if not result:
        log.debug("classifier_no_match", length=len(text))
    else:
        log.debug("classifier_matched", fields=sorted(result))
    return result
