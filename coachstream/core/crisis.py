from __future__ import annotations

from pydantic import BaseModel, Field

# Matched as case-insensitive substrings, so stems cover inflected forms
# ("depression" also hits "Depressionen").
CRISIS_KEYWORDS: tuple[str, ...] = (
    # Depression
    "depression",
    "depressiv",
    "deprimiert",
    # Suicide and self-harm
    "suizid",
    "selbstmord",
    "umbringen",
    "nicht mehr leben",
    "sterben will",
    "will sterben",
    "ritzen",
    "selbstverletz",
    # Eating disorders
    "essstörung",
    "magersucht",
    "magersüchtig",
    "anorexie",
    "bulimie",
    "binge eating",
    # Panic
    "panikattacke",
    "panikattacken",
    # Hopelessness
    "hoffnungslos",
    "keinen sinn mehr",
    "wertlos",
    "ich hasse mich",
)

_NORMALIZED_KEYWORDS = tuple(keyword.casefold() for keyword in CRISIS_KEYWORDS)


class CrisisHotline(BaseModel):
    label: str
    contact: str
    note: str | None = None


CRISIS_HOTLINES: list[CrisisHotline] = [
    CrisisHotline(label="Telefonseelsorge", contact="0800 111 0 111", note="kostenlos, 24/7"),
    CrisisHotline(label="Alternativ", contact="0800 111 0 222", note="kostenlos, 24/7"),
    CrisisHotline(label="Online-Chat Beratung", contact="https://online.telefonseelsorge.de"),
]


class CrisisScanResult(BaseModel):
    text_length: int
    matched: bool
    keywords: list[str] = Field(default_factory=list)


def find_crisis_keywords(text: str) -> CrisisScanResult:
    """Return every keyword contained in ``text``, in list order."""
    if not text:
        return CrisisScanResult(text_length=0, matched=False)

    haystack = text.casefold()
    hits = [
        keyword
        for keyword, normalized in zip(CRISIS_KEYWORDS, _NORMALIZED_KEYWORDS)
        if normalized in haystack
    ]
    return CrisisScanResult(text_length=len(text), matched=bool(hits), keywords=hits)


def scan(text: str) -> bool:
    if not text:
        return False
    haystack = text.casefold()
    return any(keyword in haystack for keyword in _NORMALIZED_KEYWORDS)


def build_crisis_notice_message(hotlines: list[CrisisHotline] | None = None) -> str:
    entries = hotlines if hotlines is not None else CRISIS_HOTLINES
    if not entries:
        return ""
    lines = [
        "Du bist nicht allein.",
        "Bei psychischen Problemen gibt es professionelle Hilfe. Diese Menschen sind für dich da:",
    ]
    for hotline in entries:
        suffix = f" ({hotline.note})" if hotline.note else ""
        lines.append(f"- {hotline.label}: {hotline.contact}{suffix}")
    return "\n".join(lines) + "\n"
