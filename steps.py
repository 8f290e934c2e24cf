import math
import re
from datetime import date
from functools import partial
from typing import Optional, Sequence

from conversation import Attachment, Rejection, Step

SKIP = "skip"
DATE_RE = re.compile(r"^(\d{2})/(\d{2})/(\d{4})$")
# leading number, trailing unit or words ignored: "28g", "14.5 grams"
WEIGHT_RE = re.compile(r"\s*([+-]?(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?)")

DATE_FORMAT_HINT = "Please use the MM/DD/YYYY format (e.g. 01/15/2024)."


def is_skip(content: str) -> bool:
    return (content or "").strip().lower() == SKIP


def parse_date(text: str) -> Optional[date]:
    """MM/DD/YYYY -> date, None when malformed or not a real calendar day."""
    m = DATE_RE.match((text or "").strip())
    if not m:
        return None
    month, day, year = (int(x) for x in m.groups())
    if not 1 <= month <= 12 or not 1 <= day <= 31:
        return None
    try:
        return date(year, month, day)
    except ValueError:
        return None


def parse_weight(text: str) -> Optional[float]:
    m = WEIGHT_RE.match(text or "")
    if not m:
        return None
    value = float(m.group(1))
    if not math.isfinite(value) or value < 0:
        return None
    return value


# --------------------
# Validators: (content, attachments) -> value | Rejection
# --------------------
def validate_date(content: str, attachments: Sequence[Attachment] = ()):
    text = (content or "").strip()
    if not DATE_RE.match(text):
        return Rejection(DATE_FORMAT_HINT)
    d = parse_date(text)
    if d is None:
        return Rejection(f"That doesn't look like a valid date. {DATE_FORMAT_HINT}")
    return d.isoformat()


def validate_text(content: str, attachments: Sequence[Attachment] = (), label: str = "This field"):
    text = (content or "").strip()
    if not text:
        return Rejection(f"{label} cannot be empty.")
    return text


def validate_optional_text(content: str, attachments: Sequence[Attachment] = ()):
    if is_skip(content):
        return None
    return (content or "").strip() or None


def validate_weight(content: str, attachments: Sequence[Attachment] = ()):
    weight = parse_weight(content)
    if weight is None:
        return Rejection("Invalid weight. Please provide a valid number in grams.")
    return weight


def validate_optional_weight(content: str, attachments: Sequence[Attachment] = ()):
    if is_skip(content):
        return None
    weight = parse_weight(content)
    if weight is None:
        return Rejection('Invalid weight. Please provide a valid number in grams or type "skip".')
    return weight


def validate_pictures(content: str, attachments: Sequence[Attachment] = ()):
    if is_skip(content):
        return []
    return [a.url for a in attachments if a.is_image]


# --------------------
# Step factories
# --------------------
def date_step(field: str, prompt) -> Step:
    return Step(field, prompt, validate_date, "date")


def text_step(field: str, prompt, label: str) -> Step:
    return Step(field, prompt, partial(validate_text, label=label), "text")


def optional_text_step(field: str, prompt) -> Step:
    return Step(field, prompt, validate_optional_text, "optional_text")


def weight_step(field: str, prompt) -> Step:
    return Step(field, prompt, validate_weight, "weight")


def optional_weight_step(field: str, prompt) -> Step:
    return Step(field, prompt, validate_optional_weight, "optional_weight")


def pictures_step(field: str, prompt) -> Step:
    return Step(field, prompt, validate_pictures, "pictures")
