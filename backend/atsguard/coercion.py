from __future__ import annotations

import math
import unicodedata


_YES_VALUES = {"si", "yes", "y", "s", "true", "1"}
_NO_VALUES = {"no", "n", "false", "0"}


def as_dict(value: object) -> dict[str, object]:
    if isinstance(value, dict):
        return value
    return {}


def as_list(value: object) -> list[object]:
    if isinstance(value, list):
        return value
    return []


def as_str_list(value: object) -> list[str]:
    if not isinstance(value, list):
        return []
    cleaned: list[str] = []
    for item in value:
        if item is None or isinstance(item, (dict, list)):
            continue
        text = str(item).strip()
        if text:
            cleaned.append(text)
    return cleaned


def pick_str(value: object, fallback: str = "") -> str:
    if isinstance(value, str):
        return value.strip()
    return fallback


def optional_str(value: object) -> str | None:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def coerce_float(value: object) -> float | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        parsed = float(value)
    elif isinstance(value, str) and value.strip():
        try:
            parsed = float(value.strip().replace(",", "."))
        except ValueError:
            return None
    else:
        return None
    if math.isnan(parsed) or math.isinf(parsed):
        return None
    return parsed


def coerce_bool(value: object) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0
    if isinstance(value, str):
        return fold_text(value) in {"1", "true", "yes", "y", "si"}
    return False


def fold_text(value: str) -> str:
    """Lowercase, strip accents and collapse whitespace."""
    decomposed = unicodedata.normalize("NFKD", value)
    stripped = "".join(char for char in decomposed if not unicodedata.combining(char))
    return " ".join(stripped.lower().split())


def normalize_yes_no(value: object) -> str:
    """Map yes/no variants to "Si", "No" or "" (unanswered)."""
    if isinstance(value, bool):
        return "Si" if value else "No"
    folded = fold_text(str(value if value is not None else ""))
    if folded in _YES_VALUES:
        return "Si"
    if folded in _NO_VALUES:
        return "No"
    return ""


def merge_unique(*lists: list[str]) -> list[str]:
    seen: set[str] = set()
    merged: list[str] = []
    for values in lists:
        for value in values or []:
            text = str(value or "").strip()
            if not text or text in seen:
                continue
            seen.add(text)
            merged.append(text)
    return merged


def _camel_case(key: str) -> str:
    head, *rest = key.split("_")
    return head + "".join(part[:1].upper() + part[1:] for part in rest)


def lookup(raw: dict[str, object], key: str) -> object:
    """Read a snake_case key, falling back to its camelCase spelling."""
    value = raw.get(key)
    if value is not None:
        return value
    return raw.get(_camel_case(key))


def lookup_path(raw: object, *path: str) -> object:
    current: object = raw
    for key in path:
        if not isinstance(current, dict):
            return None
        current = lookup(current, key)
    return current
