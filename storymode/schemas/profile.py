from __future__ import annotations

import re
from dataclasses import dataclass, field, replace
from typing import Any, Dict, Iterable, List, Mapping, Tuple

PROFILE_FIELD_COUNT = 7
NOT_SPECIFIED = "Not specified"


@dataclass(frozen=True)
class FieldDefinition:
    name: str
    label: str
    description: str
    keywords: Tuple[str, ...]
    multi_valued: bool = True
    prompt: str | None = None
    icon: str = ""
    # matched as whole words, unlike keywords which match anywhere in the text
    names: Tuple[str, ...] = ()


COLLEGE_NAMES: Tuple[str, ...] = (
    "mit",
    "stanford",
    "harvard",
    "yale",
    "princeton",
    "caltech",
    "berkeley",
    "ucla",
    "cornell",
    "dartmouth",
    "georgetown",
    "nyu",
    "upenn",
    "uchicago",
    "northwestern",
    "carnegie mellon",
    "johns hopkins",
    "georgia tech",
)

FIELD_DEFINITIONS: Tuple[FieldDefinition, ...] = (
    FieldDefinition(
        name="major",
        label="Intended Major",
        description="What field the applicant wants to study",
        keywords=("major", "study", "field"),
        multi_valued=False,
        prompt="What do you want to study, and what first drew you to that field?",
        icon="📚",
    ),
    FieldDefinition(
        name="colleges",
        label="Target Colleges",
        description="Schools the applicant is applying to",
        keywords=("college", "university", "school", "applying to", "apply to"),
        prompt="Which colleges or universities are on your list?",
        icon="🏫",
        names=COLLEGE_NAMES,
    ),
    FieldDefinition(
        name="essay_prompts",
        label="Essay Prompts",
        description="Specific essay prompts the applicant is working on",
        keywords=("essay", "prompt", "question"),
        prompt="Which essay prompt are you working on right now? Paste it in if you can.",
        icon="📝",
    ),
    FieldDefinition(
        name="extracurriculars",
        label="Extracurriculars",
        description="Activities, leadership roles and volunteering",
        keywords=("extracurricular", "activity", "club", "volunteer", "leadership"),
        prompt="What activities, clubs, leadership roles or volunteering take up your time outside class?",
        icon="🏅",
    ),
    FieldDefinition(
        name="classes",
        label="Classes",
        description="Relevant coursework that showcases the applicant's interests",
        keywords=("class", "course", "ap ", "honors", "ib "),
        prompt="Which classes (AP, IB, honors or electives) best show your academic interests?",
        icon="📖",
    ),
    FieldDefinition(
        name="hobbies",
        label="Hobbies",
        description="Personal interests and passions",
        keywords=("hobby", "interest", "passion", "enjoy", "love"),
        prompt="What do you love doing when nobody is grading you?",
        icon="🎨",
    ),
    FieldDefinition(
        name="awards",
        label="Awards",
        description="Recognition and achievements",
        keywords=("award", "recognition", "achievement", "honor", "prize"),
        prompt="Have you received any awards, honors or other recognition?",
        icon="🏆",
    ),
)

_FIELDS_BY_NAME: Dict[str, FieldDefinition] = {definition.name: definition for definition in FIELD_DEFINITIONS}
_CAMEL_BOUNDARY = re.compile(r"(?<=[a-z0-9])(?=[A-Z])")


def normalize_field_name(name: str) -> str:
    """Map ``essayPrompts``, ``Essay Prompts`` or ``essay-prompts`` to ``essay_prompts``."""

    spaced = _CAMEL_BOUNDARY.sub("_", name.strip())
    return re.sub(r"[\s\-]+", "_", spaced).lower()


def get_field_definition(name: str) -> FieldDefinition | None:
    return _FIELDS_BY_NAME.get(normalize_field_name(name))


def field_definitions() -> Iterable[FieldDefinition]:
    return list(FIELD_DEFINITIONS)


def field_names() -> List[str]:
    return [definition.name for definition in FIELD_DEFINITIONS]


def compute_completeness(populated_count: int) -> int:
    """Percentage of populated fields, rounded half-up.

    Integer arithmetic keeps the result exact: the eight reachable values are
    0, 14, 29, 43, 57, 71, 86 and 100.
    """

    if populated_count < 0 or populated_count > PROFILE_FIELD_COUNT:
        raise ValueError(f"populated_count must be within 0..{PROFILE_FIELD_COUNT}, got {populated_count}")
    return (200 * populated_count + PROFILE_FIELD_COUNT) // (2 * PROFILE_FIELD_COUNT)


@dataclass(frozen=True)
class Profile:
    """Accumulating applicant record.

    Instances are immutable; ``storymode.utils.profile_store.merge_profile``
    returns a new profile for every turn. ``completeness`` is always derived
    from the seven fields and has no setter.
    """

    major: str | None = None
    colleges: Tuple[str, ...] = field(default_factory=tuple)
    essay_prompts: Tuple[str, ...] = field(default_factory=tuple)
    extracurriculars: Tuple[str, ...] = field(default_factory=tuple)
    classes: Tuple[str, ...] = field(default_factory=tuple)
    hobbies: Tuple[str, ...] = field(default_factory=tuple)
    awards: Tuple[str, ...] = field(default_factory=tuple)

    def value(self, name: str) -> Any:
        definition = get_field_definition(name)
        if definition is None:
            raise KeyError(name)
        return getattr(self, definition.name)

    def is_populated(self, name: str) -> bool:
        value = self.value(name)
        if isinstance(value, str):
            return bool(value.strip())
        return bool(value)

    def populated_fields(self) -> List[str]:
        return [name for name in field_names() if self.is_populated(name)]

    def missing_fields(self) -> List[FieldDefinition]:
        return [definition for definition in FIELD_DEFINITIONS if not self.is_populated(definition.name)]

    @property
    def completeness(self) -> int:
        return compute_completeness(len(self.populated_fields()))

    def with_updates(self, **changes: Any) -> "Profile":
        return replace(self, **changes)

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"major": self.major}
        for definition in FIELD_DEFINITIONS:
            if definition.multi_valued:
                payload[definition.name] = list(getattr(self, definition.name))
        payload["completeness"] = self.completeness
        return payload

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Profile":
        values: Dict[str, Any] = {}
        for key, raw in data.items():
            definition = get_field_definition(str(key))
            if definition is None or raw is None:
                continue
            if definition.multi_valued:
                if isinstance(raw, str):
                    raw = [raw]
                values[definition.name] = tuple(str(item) for item in raw)
            else:
                values[definition.name] = str(raw)
        return cls(**values)


def render_field_value(profile: Profile, definition: FieldDefinition) -> str:
    if not profile.is_populated(definition.name):
        return NOT_SPECIFIED
    value = getattr(profile, definition.name)
    if definition.multi_valued:
        return "; ".join(value)
    return str(value)
