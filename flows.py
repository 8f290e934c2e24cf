"""Grow log conversations: start-grow, flower, results and the daily prompt.

Each conversation is a table of steps run by the ConversationEngine; this
module owns the domain side (preconditions before a conversation starts, the
finalize action once the last answer is in) plus the single-shot harvest and
/prompt commands and the scheduled daily reminder.
"""
import logging
from datetime import date, datetime, timedelta
from typing import Callable, Optional
from zoneinfo import ZoneInfo

from conversation import (
    AlreadyActive,
    Completion,
    ConversationDefinition,
    ConversationEngine,
    DeliveryFailure,
    DomainPrecondition,
    FinalizeFailure,
)
from formatting import daily_summary_text, grow_name, grow_text
from steps import (
    date_step,
    optional_text_step,
    optional_weight_step,
    pictures_step,
    text_step,
    weight_step,
)
from storage import MAX_ONGOING_GROWS, GrowLimitReached, StorageError

log = logging.getLogger("growbuddy.flows")

START_GROW = "start-grow"
FLOWER = "flower"
RESULTS = "results"
DAILY_PROMPT = "daily-prompt"

LABELS = {
    START_GROW: "grow creation",
    FLOWER: "flower entry",
    RESULTS: "results entry",
    DAILY_PROMPT: "daily update",
}

PROMPT_USAGE_KEEP_DAYS = 7


def _daily_prompt_intro(data: dict) -> str:
    return (
        f"📸 It's time to update your grow: {data.get('strain') or 'Unnamed Grow'}\n\n"
        "Send pictures of your grow (attach one or more photos), or type \"skip\":"
    )


START_GROW_STEPS = (
    date_step(
        "start_date",
        "📅 When was it planted? Send the start date as MM/DD/YYYY (e.g. 01/15/2024).\n"
        "This date is the baseline for the grow timer.",
    ),
    text_step("strain", "🧬 Strain name?", "Strain name"),
    text_step("germination_method", "🌱 Germination method? (e.g. seed, clone)", "Germination method"),
    text_step("pot_size", "🪴 Pot size? (e.g. 5 gallon, 3 liter)", "Pot size"),
)

FLOWER_STEPS = (
    text_step("terpene_smell", "👃 Describe the terpene smell:", "Terpene smell"),
    text_step("flower_development", "🌸 Describe the flower development:", "Flower development"),
)

RESULTS_STEPS = (
    weight_step("wet_weight", "💧 Wet weight in grams?"),
    optional_weight_step("dry_weight", "☀️ Dry weight in grams? (or type \"skip\")"),
    optional_text_step("harvest_notes", "📝 Harvest notes? (or type \"skip\")"),
)

DAILY_PROMPT_STEPS = (
    pictures_step("pictures", _daily_prompt_intro),
    optional_text_step("environment", "🌡️ Environment conditions (temperature, humidity...)? Or type \"skip\":"),
    optional_text_step("feeding", "💧 Feeding schedule / nutrients? Or type \"skip\":"),
    optional_text_step("growth_stage", "📈 Current growth stage? Or type \"skip\":"),
    optional_text_step("plant_health", "🏥 Plant health? Or type \"skip\":"),
    optional_text_step("notes", "📝 Any additional notes? Or type \"skip\" to finish:"),
)


class GrowFlows:
    def __init__(self, repo, engine: ConversationEngine, tz: ZoneInfo = ZoneInfo("UTC"),
                 today: Optional[Callable[[], date]] = None):
        self.repo = repo
        self.engine = engine
        self.tz = tz
        self._today = today
        # user_id -> date the manual /prompt was last used
        self.prompt_usage: dict = {}

        engine.register(ConversationDefinition(START_GROW, START_GROW_STEPS, self._finish_start_grow, cleanup=True))
        engine.register(ConversationDefinition(FLOWER, FLOWER_STEPS, self._finish_flower))
        engine.register(ConversationDefinition(RESULTS, RESULTS_STEPS, self._finish_results))
        engine.register(ConversationDefinition(DAILY_PROMPT, DAILY_PROMPT_STEPS, self._finish_daily_prompt, cleanup=True))

    @property
    def store(self):
        return self.engine.store

    def today(self) -> date:
        if self._today is not None:
            return self._today()
        return datetime.now(self.tz).date()

    def ensure_idle(self, user_id, definition_id: str) -> None:
        # one conversation per user, whatever its kind
        conv = self.store.get(user_id)
        if conv is not None:
            raise AlreadyActive(user_id, conv.definition_id, definition_id)

    def _active_grow(self, user_id) -> dict:
        grow = self.repo.get_active_grow(user_id)
        if grow is None:
            raise DomainPrecondition(
                "You don't have an active (non-harvested) grow. Start one first with /startgrow."
            )
        return grow

    # --------------------
    # Conversation starts
    # --------------------
    async def start_grow(self, user_id, channel_id, is_direct: bool = False, message_id=None) -> None:
        self.ensure_idle(user_id, START_GROW)
        if self.repo.count_ongoing(user_id) >= MAX_ONGOING_GROWS:
            raise DomainPrecondition(
                f"You already have {MAX_ONGOING_GROWS} ongoing grows. Please harvest some before starting a new one."
            )
        conv = await self.engine.begin(
            user_id,
            START_GROW,
            channel_id,
            {"origin_channel": None if is_direct else channel_id},
            intro="🌱 Start New Grow",
        )
        conv.track(channel_id, message_id)

    async def flower(self, user_id, channel_id) -> None:
        self.ensure_idle(user_id, FLOWER)
        grow = self._active_grow(user_id)
        if grow.get("flower_start_date"):
            raise DomainPrecondition(f"{grow_name(grow)} is already in the flower stage.")

        grow = self.repo.start_flower(grow["id"], self.today())
        log.info("grow %s of user %s entered flower", grow["id"], user_id)
        await self.engine.begin(
            user_id,
            FLOWER,
            channel_id,
            {"grow_id": grow["id"]},
            intro="Flower stage started! 🌸\n\n" + grow_text(grow, self.today()),
        )

    async def results(self, user_id, channel_id) -> None:
        self.ensure_idle(user_id, RESULTS)
        grow = self.repo.get_latest_unresulted_harvest(user_id)
        if grow is None:
            raise DomainPrecondition(
                "You don't have a harvested grow waiting for results. Harvest a grow first with /harvest."
            )
        await self.engine.begin(
            user_id,
            RESULTS,
            channel_id,
            {"grow_id": grow["id"]},
            intro=f"📊 Harvest results for: {grow_name(grow)}",
        )

    async def send_daily_prompt(self, grow: dict, origin_channel=None) -> bool:
        """Open the daily-prompt conversation in the owner's private chat.

        Returns False when today's update already exists. AlreadyActive and
        DeliveryFailure propagate to the caller.
        """
        today = self.today()
        if self.repo.get_today_update(grow["id"], today) is not None:
            log.info("skipping daily prompt for grow %s, already updated %s", grow["id"], today)
            return False
        user_id = grow["user_id"]
        # a Telegram private chat has the same id as the user
        await self.engine.begin(
            user_id,
            DAILY_PROMPT,
            user_id,
            {"grow_id": grow["id"], "strain": grow_name(grow), "origin_channel": origin_channel},
            origin_channel=origin_channel,
        )
        return True

    # --------------------
    # Single-shot commands
    # --------------------
    def harvest(self, user_id) -> str:
        grow = self._active_grow(user_id)
        grow = self.repo.harvest(grow["id"], self.today())
        log.info("grow %s of user %s harvested", grow["id"], user_id)
        return (
            "Grow harvested! ✅ The grow log is stopped and daily prompts will no longer be sent for it.\n"
            "Record the harvest with /results.\n\n" + grow_text(grow, self.today())
        )

    async def prompt(self, user_id, channel_id, is_direct: bool = False) -> Optional[str]:
        """Manual re-trigger of today's daily prompt, once per day."""
        grow = self._active_grow(user_id)
        today = self.today()
        if self.repo.get_today_update(grow["id"], today) is not None:
            raise DomainPrecondition(
                f"You've already completed today's update for {grow_name(grow)}. "
                "/prompt only works while today's update is missing."
            )
        if self.prompt_usage.get(user_id) == today:
            raise DomainPrecondition("/prompt can only be used once per day. Please try again tomorrow.")
        self.ensure_idle(user_id, DAILY_PROMPT)

        self.prompt_usage[user_id] = today
        self._prune_prompt_usage(today)
        try:
            await self.send_daily_prompt(grow, None if is_direct else channel_id)
        except DeliveryFailure:
            del self.prompt_usage[user_id]
            raise DomainPrecondition(
                "I couldn't send you a private message. Open a chat with me, press Start, then try /prompt again."
            ) from None
        if is_direct:
            return None
        return f"I've sent you today's prompt for {grow_name(grow)} in a private message. 📬"

    def _prune_prompt_usage(self, today: date) -> None:
        cutoff = today - timedelta(days=PROMPT_USAGE_KEEP_DAYS)
        for uid in [uid for uid, day in self.prompt_usage.items() if day < cutoff]:
            del self.prompt_usage[uid]

    # --------------------
    # Scheduled
    # --------------------
    async def daily_reminder(self) -> int:
        """Prompt every ongoing grow that has no update today. Returns prompts started."""
        try:
            grows = self.repo.list_all_ongoing()
        except Exception:
            log.exception("daily reminder: could not load ongoing grows")
            return 0

        started = 0
        for grow in grows:
            try:
                if await self.send_daily_prompt(grow):
                    started += 1
            except AlreadyActive as e:
                log.info("daily reminder: user %s busy with '%s', grow %s skipped",
                         e.user_id, e.definition_id, grow["id"])
            except DeliveryFailure as e:
                log.warning("daily reminder: grow %s: %s", grow["id"], e)
            except Exception:
                log.exception("daily reminder: grow %s failed", grow["id"])
        log.info("daily reminder: %d prompt(s) sent for %d ongoing grow(s)", started, len(grows))
        return started

    async def _prompt_next_grow(self, user_id, origin_channel=None) -> None:
        """Open the daily prompt of the user's next ongoing grow still missing today's update."""
        today = self.today()
        for grow in self.repo.list_ongoing(user_id):
            if self.repo.get_today_update(grow["id"], today) is not None:
                continue
            try:
                await self.send_daily_prompt(grow, origin_channel)
            except (AlreadyActive, DeliveryFailure) as e:
                log.warning("no daily prompt for next grow %s: %s", grow["id"], e)
            return

    # --------------------
    # Finalize actions
    # --------------------
    async def _finish_start_grow(self, user_id, data: dict) -> Completion:
        try:
            grow = self.repo.create_grow(
                user_id,
                data["start_date"],
                data["strain"],
                data["germination_method"],
                data["pot_size"],
            )
        except GrowLimitReached as e:
            raise DomainPrecondition(str(e)) from e
        log.info("user %s created grow %s", user_id, grow["id"])
        origin = data.get("origin_channel")

        async def first_daily_prompt():
            try:
                await self.send_daily_prompt(grow, origin)
            except (AlreadyActive, DeliveryFailure) as e:
                log.warning("no initial daily prompt for grow %s: %s", grow["id"], e)

        return Completion(
            "Grow created successfully! 🌱\n\n" + grow_text(grow, self.today()),
            follow_up=first_daily_prompt,
        )

    async def _finish_flower(self, user_id, data: dict) -> Completion:
        self.repo.save_grow_update(
            data["grow_id"],
            self.today(),
            terpene_smell=data["terpene_smell"],
            flower_development=data["flower_development"],
        )
        grow = self.repo.get_grow(data["grow_id"])
        if grow is None:
            return Completion("Flower stage information saved! 🌸")
        return Completion("Flower stage information saved! 🌸\n\n" + grow_text(grow, self.today()))

    async def _finish_results(self, user_id, data: dict) -> Completion:
        try:
            grow = self.repo.record_results(
                data["grow_id"], data["wet_weight"], data["dry_weight"], data["harvest_notes"]
            )
        except StorageError as e:
            raise FinalizeFailure(str(e)) from e
        return Completion("Harvest results saved! 📊\n\n" + grow_text(grow, self.today()))

    async def _finish_daily_prompt(self, user_id, data: dict) -> Completion:
        update = self.repo.save_grow_update(
            data["grow_id"],
            self.today(),
            pictures=data["pictures"],
            environment=data["environment"],
            feeding=data["feeding"],
            growth_stage=data["growth_stage"],
            plant_health=data["plant_health"],
            notes=data["notes"],
        )
        origin = data.get("origin_channel")

        async def next_grow():
            # one conversation per user, so further grows are prompted in turn
            await self._prompt_next_grow(user_id, origin)

        grow = self.repo.get_grow(data["grow_id"])
        if grow is None:
            return Completion("Daily update saved! Thank you for keeping track of your grow! 🌱", follow_up=next_grow)
        return Completion(daily_summary_text(grow, update, self.today()), follow_up=next_grow)
