from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, Field

from atsguard.coercion import as_dict, as_str_list, merge_unique


ControlLevel = Literal["engineering", "administrative", "ppe"]
CONTROL_LEVELS: tuple[ControlLevel, ...] = ("engineering", "administrative", "ppe")


class ControlSet(BaseModel):
    """Controls by hierarchy level: engineering, then administrative, then PPE."""

    engineering: list[str] = Field(default_factory=list)
    administrative: list[str] = Field(default_factory=list)
    ppe: list[str] = Field(default_factory=list)

    def flattened(self) -> list[str]:
        return merge_unique(self.engineering, self.administrative, self.ppe)

    def is_empty(self) -> bool:
        return not (self.engineering or self.administrative or self.ppe)


def normalize_control_set(raw: object) -> ControlSet:
    data = as_dict(raw)
    return ControlSet(
        engineering=merge_unique(as_str_list(data.get("engineering"))),
        administrative=merge_unique(as_str_list(data.get("administrative"))),
        ppe=merge_unique(as_str_list(data.get("ppe"))),
    )


def merge_control_sets(base: ControlSet, *others: ControlSet) -> ControlSet:
    merged = base
    for other in others:
        merged = ControlSet(
            engineering=merge_unique(merged.engineering, other.engineering),
            administrative=merge_unique(merged.administrative, other.administrative),
            ppe=merge_unique(merged.ppe, other.ppe),
        )
    return merged
