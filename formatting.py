from datetime import date
from typing import Optional

TELEGRAM_LIMIT = 4096


def _as_date(value) -> Optional[date]:
    if value is None or isinstance(value, date):
        return value
    return date.fromisoformat(str(value)[:10])


def fmt_date(value) -> str:
    d = _as_date(value)
    return d.strftime("%m/%d/%Y") if d else "—"


def days_since(value, today: date) -> int:
    return (today - _as_date(value)).days


def fmt_weight(value) -> str:
    return f"{value:g}g"


def grow_name(grow: dict) -> str:
    return grow.get("strain") or "Unnamed Grow"


def grow_text(grow: dict, today: date) -> str:
    lines = [
        f"🌱 Grow: {grow_name(grow)}",
        f"📅 Start date: {fmt_date(grow['start_date'])}",
        f"⏱️ Days since start: {days_since(grow['start_date'], today)}",
        f"🌿 Stage: {grow.get('current_stage') or 'Not set'}",
    ]
    if grow.get("flower_start_date"):
        lines.append(f"🌸 Flower start: {fmt_date(grow['flower_start_date'])}")
        lines.append(f"⏱️ Days in flower: {days_since(grow['flower_start_date'], today)}")
    if grow.get("germination_method"):
        lines.append(f"🌱 Germination: {grow['germination_method']}")
    if grow.get("pot_size"):
        lines.append(f"🪴 Pot size: {grow['pot_size']}")
    if grow.get("is_harvested"):
        if grow.get("harvest_date"):
            lines.append(f"✅ Harvested: {fmt_date(grow['harvest_date'])}")
        if grow.get("wet_weight") is not None:
            lines.append(f"💧 Wet weight: {fmt_weight(grow['wet_weight'])}")
        if grow.get("dry_weight") is not None:
            lines.append(f"☀️ Dry weight: {fmt_weight(grow['dry_weight'])}")
        if grow.get("harvest_notes"):
            lines.append(f"📝 Harvest notes: {grow['harvest_notes']}")
    return "\n".join(lines)


SUMMARY_FIELDS = (
    ("environment", "🌡️ Environment"),
    ("feeding", "💧 Feeding"),
    ("growth_stage", "📈 Growth stage"),
    ("plant_health", "🏥 Plant health"),
    ("terpene_smell", "👃 Terpene smell"),
    ("flower_development", "🌸 Flower development"),
    ("notes", "📝 Notes"),
)


def daily_summary_text(grow: dict, update: dict, today: date) -> str:
    lines = [
        f"📊 Daily Summary: {grow_name(grow)}",
        f"📅 Update date: {fmt_date(update['update_date'])}",
        f"⏱️ Days since start: {days_since(grow['start_date'], today)}",
    ]
    if grow.get("flower_start_date"):
        lines.append(f"⏱️ Days in flower: {days_since(grow['flower_start_date'], today)}")
    for key, label in SUMMARY_FIELDS:
        if update.get(key):
            lines.append(f"{label}: {update[key]}")
    pictures = update.get("pictures") or []
    if pictures:
        lines.append(f"📷 Pictures: {len(pictures)}")
    return "\n".join(lines)


def split_message(text: str, limit: int = TELEGRAM_LIMIT) -> list:
    """Split on line breaks (or spaces) so every chunk fits one Telegram message."""
    chunks = []
    rest = text
    while len(rest) > limit:
        cut = rest.rfind("\n", 0, limit)
        if cut <= 0:
            cut = rest.rfind(" ", 0, limit)
        if cut <= 0:
            cut = limit
        chunks.append(rest[:cut].rstrip())
        rest = rest[cut:].lstrip()
    if rest or not chunks:
        chunks.append(rest)
    return chunks


HELP_TEXT = (
    "🌱 Grow tracker\n\n"
    "Commands:\n"
    "/startgrow — start tracking a new grow (date, strain, germination, pot size)\n"
    "/flower — move your active grow into flower (terpene smell, development)\n"
    "/harvest — mark your active grow as harvested, stops daily prompts\n"
    "/results — record wet/dry weight and notes for your last harvest\n"
    "/prompt — resend today's daily prompt (once a day)\n"
    "/id <strain> — strain information\n"
    "/ask <question> — ask a grow question, attach photos if you like\n"
    "/help — this message\n\n"
    "Daily prompts come by private message every morning for each ongoing grow: "
    "pictures, environment, feeding, growth stage, plant health, notes.\n\n"
    "Dates use MM/DD/YYYY (e.g. 01/15/2024). Type \"skip\" to leave an optional answer empty. "
    "Unanswered forms expire after 10 minutes. Up to 20 ongoing grows at a time.\n\n"
    "In a group, the bot only sees your answers when its privacy mode is off "
    "(BotFather /setprivacy). Otherwise run /startgrow, /flower and /results in a private chat."
)
