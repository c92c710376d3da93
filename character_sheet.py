"""Character sheet helpers shared by the room store and tests."""

from __future__ import annotations

import json
from typing import Any

ABILITIES = ("strength", "dexterity", "constitution", "intelligence", "wisdom", "charisma")
DEFAULT_ABILITY_SCORE = 10

REQUIRED_FIELDS = ("name", "class", "level", "race") + tuple(f"abilities.{name}" for name in ABILITIES)


def ability_score(value: Any) -> int:
    """Whole-number ability score; blanks and junk fall back to 10."""
    if isinstance(value, bool):
        return DEFAULT_ABILITY_SCORE
    try:
        return int(float(value))
    except (TypeError, ValueError, OverflowError):
        return DEFAULT_ABILITY_SCORE


def normalize_character_data(data: Any) -> dict:
    """Character payloads are free-form objects; JSON text is accepted, anything else becomes {}."""
    if isinstance(data, str):
        try:
            data = json.loads(data)
        except Exception:
            return {}
    if not isinstance(data, dict):
        return {}
    abilities = data.get("abilities")
    if isinstance(abilities, dict):
        data = dict(data)
        fixed = dict(abilities)
        for name in ABILITIES:
            if name in fixed:
                fixed[name] = ability_score(fixed[name])
        data["abilities"] = fixed
    return data


def field_value(data: dict | None, dotted: str) -> Any:
    value: Any = data
    for part in dotted.split("."):
        if not isinstance(value, dict):
            return None
        value = value.get(part)
    return value


def is_filled(value: Any) -> bool:
    if value is None or value is False:
        return False
    if isinstance(value, str):
        return value != ""
    if isinstance(value, (int, float)):
        return value != 0
    return True


def completion_percent(data: dict | None) -> int:
    if not isinstance(data, dict):
        return 0
    filled = sum(1 for key in REQUIRED_FIELDS if is_filled(field_value(data, key)))
    return int(round(filled * 100 / len(REQUIRED_FIELDS)))
