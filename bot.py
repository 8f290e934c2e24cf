import logging
import sys
from datetime import time as dtime
from typing import Optional

from telegram import BotCommand, Message, Update
from telegram.constants import ChatType
from telegram.error import TelegramError
from telegram.ext import Application, ContextTypes, MessageHandler, filters

from ai import AIClient
from config import ConfigError, Settings, load_settings
from conversation import SWEEP_INTERVAL, Attachment, ConversationEngine, ConversationStore
from dispatcher import Dispatcher, InboundMessage
from flows import GrowFlows
from storage import Repository

# --------------------
# Config
# --------------------
URL_PATH = "webhook"
ALBUM_WAIT = 1.5  # seconds to collect the photos of one album

log = logging.getLogger("growbuddy")

COMMANDS = [
    BotCommand("startgrow", "start tracking a new grow"),
    BotCommand("flower", "move your active grow into flower"),
    BotCommand("harvest", "mark your active grow as harvested"),
    BotCommand("results", "record harvest weights and notes"),
    BotCommand("prompt", "resend today's daily prompt"),
    BotCommand("id", "strain information"),
    BotCommand("ask", "ask a grow question"),
    BotCommand("help", "all commands"),
]


# --------------------
# Transport
# --------------------
class TelegramTransport:
    def __init__(self, bot):
        self.bot = bot

    async def send(self, chat_id, text: str) -> Optional[int]:
        sent = await self.bot.send_message(chat_id=chat_id, text=text)
        return sent.message_id

    async def delete(self, chat_id, message_id) -> None:
        await self.bot.delete_message(chat_id=chat_id, message_id=message_id)


async def attachments_of(message: Message) -> list:
    out = []
    if message.photo:
        # last size is the largest
        try:
            f = await message.photo[-1].get_file()
            out.append(Attachment(f.file_path, "image/jpeg"))
        except TelegramError as e:
            log.warning("could not fetch photo of message %s: %s", message.message_id, e)
    if message.document:
        doc = message.document
        if doc.mime_type and doc.mime_type.startswith("image/"):
            try:
                f = await doc.get_file()
                out.append(Attachment(f.file_path, doc.mime_type))
            except TelegramError as e:
                log.warning("could not fetch document of message %s: %s", message.message_id, e)
        else:
            out.append(Attachment(doc.file_id, doc.mime_type))
    return out


async def to_inbound(messages: list) -> InboundMessage:
    """One InboundMessage for a single message or for all messages of an album."""
    first = messages[0]
    attachments = []
    for m in messages:
        attachments.extend(await attachments_of(m))
    content = next((m.text or m.caption for m in messages if m.text or m.caption), "")
    return InboundMessage(
        user_id=first.from_user.id,
        channel_id=first.chat_id,
        content=content,
        attachments=attachments,
        is_direct=first.chat.type == ChatType.PRIVATE,
        message_id=first.message_id,
    )


# --------------------
# Handlers
# --------------------
def _dispatcher(context: ContextTypes.DEFAULT_TYPE) -> Dispatcher:
    return context.bot_data["dispatcher"]


async def on_message(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    message = update.effective_message
    if message is None or message.from_user is None or message.from_user.is_bot:
        return

    if message.media_group_id:
        # albums arrive as one update per photo
        key = f"album:{message.media_group_id}"
        pending = context.bot_data.setdefault(key, [])
        pending.append(message)
        if len(pending) == 1:
            context.job_queue.run_once(flush_album, ALBUM_WAIT, data=key, name=key)
        return

    await _dispatcher(context).dispatch(await to_inbound([message]))


async def flush_album(context: ContextTypes.DEFAULT_TYPE) -> None:
    messages = context.bot_data.pop(context.job.data, [])
    if messages:
        await _dispatcher(context).dispatch(await to_inbound(messages))


async def on_error(update: object, context: ContextTypes.DEFAULT_TYPE) -> None:
    log.error("unhandled error for update %s", update, exc_info=context.error)


# --------------------
# Jobs
# --------------------
async def daily_prompt_job(context: ContextTypes.DEFAULT_TYPE) -> None:
    flows: GrowFlows = context.bot_data["flows"]
    await flows.daily_reminder()


async def sweep_job(context: ContextTypes.DEFAULT_TYPE) -> None:
    store: ConversationStore = context.bot_data["store"]
    store.sweep()


async def post_init(app: Application) -> None:
    try:
        await app.bot.set_my_commands(COMMANDS)
    except TelegramError as e:
        log.warning("could not register the command menu: %s", e)


# --------------------
# Main
# --------------------
def build_application(settings: Settings, repo: Repository) -> Application:
    app = Application.builder().token(settings.bot_token).post_init(post_init).build()

    store = ConversationStore()
    engine = ConversationEngine(store, TelegramTransport(app.bot))
    flows = GrowFlows(repo, engine, tz=settings.tz)
    ai = AIClient(
        api_key=settings.ai_api_key,
        api_url=settings.ai_api_url,
        model=settings.ai_model,
        provider=settings.ai_provider,
    )
    app.bot_data.update(store=store, flows=flows, dispatcher=Dispatcher(engine, flows, ai))

    app.add_handler(MessageHandler(filters.TEXT | filters.PHOTO | filters.Document.ALL, on_message))
    app.add_error_handler(on_error)

    app.job_queue.run_daily(
        daily_prompt_job,
        time=dtime(hour=settings.daily_prompt_hour, minute=settings.daily_prompt_minute, tzinfo=settings.tz),
        name="daily_prompt",
    )
    app.job_queue.run_repeating(sweep_job, interval=SWEEP_INTERVAL, first=SWEEP_INTERVAL, name="conversation_sweep")
    return app


def main() -> None:
    try:
        settings = load_settings()
    except ConfigError as e:
        logging.basicConfig(level=logging.INFO)
        log.error("configuration error: %s", e)
        sys.exit(1)

    logging.basicConfig(level=getattr(logging, settings.log_level, logging.INFO))
    # httpx logs request URLs, which carry the bot token
    logging.getLogger("httpx").setLevel(logging.WARNING)

    repo = Repository(settings.database_url)
    repo.init_schema()
    app = build_application(settings, repo)
    log.info(
        "daily prompts at %02d:%02d %s",
        settings.daily_prompt_hour, settings.daily_prompt_minute, settings.tz.key,
    )

    if settings.base_url:
        app.run_webhook(
            listen="0.0.0.0",
            port=settings.port,
            url_path=URL_PATH,
            webhook_url=f"{settings.base_url}/{URL_PATH}",
        )
    else:
        app.run_polling(allowed_updates=Update.ALL_TYPES)


if __name__ == "__main__":
    main()
