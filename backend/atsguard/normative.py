from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, Field

from atsguard.coercion import as_dict, as_list, optional_str, pick_str


class NormRef(BaseModel):
    standard: str = Field(..., min_length=1)
    clause: str | None = None
    note: str | None = None
    url: str | None = None


class NormCitation(BaseModel):
    standard: str = Field(..., min_length=1)
    clause: str | None = None


class Recommendation(BaseModel):
    topic: str = Field(..., min_length=1)
    recommendation: str = Field(..., min_length=1)
    based_on: list[NormCitation] = Field(default_factory=list)
    verification: Literal["ok", "requires_verification"] = "requires_verification"


def _text(value: object) -> str:
    if value is None or isinstance(value, (dict, list)):
        return ""
    return str(value).strip()


def normalize_norm_refs(raw: object) -> list[NormRef]:
    refs: list[NormRef] = []
    for item in as_list(raw):
        data = as_dict(item)
        standard = _text(data.get("standard"))
        if not standard:
            continue
        refs.append(
            NormRef(
                standard=standard,
                clause=optional_str(_text(data.get("clause"))),
                note=optional_str(_text(data.get("note"))),
                url=optional_str(_text(data.get("url"))),
            )
        )
    return refs


def normalize_recommendations(raw: object, allowed_standards: set[str], limit: int) -> list[Recommendation]:
    """Keep well-formed recommendations whose citations point at request-provided standards.

    A recommendation left without any allowed citation is still kept, but its
    verification is forced to ``requires_verification``.
    """
    recommendations: list[Recommendation] = []
    for item in as_list(raw):
        if len(recommendations) >= limit:
            break
        data = as_dict(item)
        topic = pick_str(data.get("topic"))
        text = pick_str(data.get("recommendation"))
        if not topic or not text:
            continue

        based_on: list[NormCitation] = []
        for citation in as_list(data.get("based_on")):
            citation_data = as_dict(citation)
            standard = _text(citation_data.get("standard"))
            if not standard or standard not in allowed_standards:
                continue
            based_on.append(
                NormCitation(standard=standard, clause=optional_str(_text(citation_data.get("clause"))))
            )

        verification = data.get("verification")
        if verification not in {"ok", "requires_verification"} or not based_on:
            verification = "requires_verification"
        recommendations.append(
            Recommendation(topic=topic, recommendation=text, based_on=based_on, verification=verification)
        )
    return recommendations
