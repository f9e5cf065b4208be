"""The ``details`` column of activity rows.

Rows written by older clients carry free text, newer ones a JSON object.
Callers go through :func:`parse_details` and branch on the returned variant
instead of guessing the shape themselves.
"""
import json
import logging
from dataclasses import dataclass, field
from typing import Union

logger = logging.getLogger(__name__)

@dataclass(frozen=True)
class Structured:
    fields: dict = field(default_factory=dict)

    def get(self, key: str, default=None):
        return self.fields.get(key, default)

    @property
    def space_number(self) -> str | None:
        value = self.fields.get("space_number")
        if value is None or str(value).strip() == "":
            return None
        return str(value)

    @property
    def space_section(self) -> str | None:
        value = self.fields.get("space_section")
        return str(value) if value else None

    def dumps(self) -> str:
        return json.dumps(self.fields, default=str)

@dataclass(frozen=True)
class Freeform:
    text: str = ""

    @property
    def space_number(self) -> str | None:
        return None

    @property
    def space_section(self) -> str | None:
        return None

Details = Union[Structured, Freeform]

def parse_details(raw) -> Details:
    if raw is None:
        return Freeform("")
    if isinstance(raw, dict):
        return Structured(dict(raw))
    text = str(raw)
    if not text.strip().startswith("{"):
        return Freeform(text)
    try:
        value = json.loads(text)
    except ValueError:
        logger.debug("details is not valid JSON, keeping it as text: %r", text[:80])
        return Freeform(text)
    if isinstance(value, dict):
        return Structured(value)
    return Freeform(text)

def space_display(details: Details) -> str | None:
    number = details.space_number
    if not number:
        return None
    section = details.space_section
    return f"{number} ({section})" if section else number

def with_space_identity(details: Details, space_number: str, section: str | None) -> Structured | None:
    """Merge space identity into details, or None when it already carries a space number.

    Free text is not kept: merging starts from an empty object.
    """
    if details.space_number:
        return None
    base = dict(details.fields) if isinstance(details, Structured) else {}
    base["space_number"] = space_number
    base["space_section"] = section or ""
    return Structured(base)
