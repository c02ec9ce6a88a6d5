"""
Agent Engine — Closed vocabularies
===================================
Error classes, learning artifacts, gate dispositions and autonomy levels,
plus the per-user autonomy configuration record passed into the gate.
"""

from enum import Enum, IntEnum
from typing import Dict, Optional

from constants import AUTONOMY_PRESETS, DEFAULT_CATEGORY_LEVEL, DEFAULT_PRESET, PRESET_NAMES


class ErrorType(str, Enum):
    FACTUAL_ERROR = 'FACTUAL_ERROR'
    REASONING_ERROR = 'REASONING_ERROR'
    TOOL_MISUSE = 'TOOL_MISUSE'
    CONTEXT_MISSING = 'CONTEXT_MISSING'


class ArtifactType(str, Enum):
    RULE = 'rule'
    RULE_DEDUP = 'rule_dedup'
    PROMPT_GUIDANCE = 'prompt_guidance'
    TOOL_GENOME_UPDATE = 'tool_genome_update'
    CONTEXT_PATTERN = 'context_pattern'


class Disposition(str, Enum):
    BLOCK = 'block'
    SUGGEST = 'suggest'
    DRAFT = 'draft'
    AUTO_WITH_NOTICE = 'auto_with_notice'
    AUTO_SILENT = 'auto_silent'

    @property
    def executes(self) -> bool:
        return self in (Disposition.AUTO_WITH_NOTICE, Disposition.AUTO_SILENT)


class AutonomyLevel(IntEnum):
    DISABLED = 0
    SUGGEST = 1
    DRAFT = 2
    AUTO_WITH_NOTICE = 3
    FULL_AUTO = 4

    @property
    def label(self) -> str:
        return f"L{int(self)}"

    @classmethod
    def parse(cls, value) -> 'AutonomyLevel':
        """Accept 3, '3' or 'L3'. Raises ValueError for anything else."""
        if isinstance(value, str):
            text = value.strip().upper()
            if text.startswith('L'):
                text = text[1:]
            if not text.isdigit():
                raise ValueError(f"Invalid autonomy level: {value!r}")
            value = int(text)
        if isinstance(value, bool) or not isinstance(value, int):
            raise ValueError(f"Invalid autonomy level: {value!r}")
        return cls(value)


LEVEL_DISPOSITIONS = {
    AutonomyLevel.DISABLED: Disposition.BLOCK,
    AutonomyLevel.SUGGEST: Disposition.SUGGEST,
    AutonomyLevel.DRAFT: Disposition.DRAFT,
    AutonomyLevel.AUTO_WITH_NOTICE: Disposition.AUTO_WITH_NOTICE,
    AutonomyLevel.FULL_AUTO: Disposition.AUTO_SILENT,
}


class AutonomySettings:
    """
    One user's autonomy configuration: a preset name plus, for 'custom',
    per-category overrides stored as 'L0'..'L4'.
    """

    def __init__(self, preset: str = DEFAULT_PRESET, category_overrides: Optional[Dict[str, str]] = None):
        if preset not in PRESET_NAMES:
            raise ValueError(f"Unknown autonomy preset: {preset}")
        self.preset = preset
        self.category_overrides = dict(category_overrides or {})

    def level_for(self, category: str) -> AutonomyLevel:
        if self.preset == 'custom' and category in self.category_overrides:
            return AutonomyLevel.parse(self.category_overrides[category])
        base = AUTONOMY_PRESETS.get(self.preset, AUTONOMY_PRESETS[DEFAULT_PRESET])
        return AutonomyLevel(base.get(category, DEFAULT_CATEGORY_LEVEL))

    def levels(self) -> Dict[str, int]:
        base = AUTONOMY_PRESETS.get(self.preset, AUTONOMY_PRESETS[DEFAULT_PRESET])
        return {category: int(self.level_for(category)) for category in base}

    def with_category_level(self, category: str, level) -> 'AutonomySettings':
        """
        Settings with one category changed. A named preset is materialised
        into explicit overrides first, so every other category keeps its level.
        """
        parsed = AutonomyLevel.parse(level)
        overrides = {cat: f"L{lvl}" for cat, lvl in self.levels().items()}
        if self.preset == 'custom':
            overrides.update(self.category_overrides)
        overrides[category] = parsed.label
        return AutonomySettings('custom', overrides)

    def to_dict(self) -> Dict:
        return {'preset': self.preset, 'category_overrides': dict(self.category_overrides),
                'levels': self.levels()}

    def __eq__(self, other):
        return (isinstance(other, AutonomySettings) and self.preset == other.preset
                and self.category_overrides == other.category_overrides)

    def __repr__(self):
        return f"AutonomySettings(preset={self.preset!r}, overrides={self.category_overrides!r})"
