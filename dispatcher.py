import logging
from dataclasses import dataclass, field
from typing import Any, Optional

from ai import AIClient, AIError
from conversation import AlreadyActive, Attachment, ConversationEngine, DeliveryFailure, DomainPrecondition
from flows import LABELS, GrowFlows
from formatting import HELP_TEXT, split_message

log = logging.getLogger("growbuddy.dispatcher")

COMMAND_PREFIXES = ("/", "!")
GENERIC_ERROR_TEXT = "An error occurred while handling your command. Please try again later. ❌"


@dataclass
class InboundMessage:
    user_id: Any
    channel_id: Any
    content: str = ""
    attachments: list = field(default_factory=list)
    is_direct: bool = False
    message_id: Any = None


def parse_command(content: str) -> tuple:
    """'/Flower@GrowBot extra words' -> ('flower', 'extra words'); (None, content) otherwise."""
    text = (content or "").strip()
    if not text or text[0] not in COMMAND_PREFIXES:
        return None, text
    head, *tail = text.split(None, 1)
    rest = tail[0] if tail else ""
    keyword = head[1:].split("@", 1)[0].lower()
    if not keyword:
        return None, text
    return keyword, rest.strip()


def already_active_text(e: AlreadyActive) -> str:
    active = LABELS.get(e.definition_id, e.definition_id)
    if e.requested == e.definition_id:
        return f"You already have a {active} in progress. Please complete it or wait for it to expire."
    return f"You're in the middle of a {active}. Finish it first or wait for it to expire (10 minutes)."


class Dispatcher:
    def __init__(self, engine: ConversationEngine, flows: GrowFlows, ai: Optional[AIClient] = None):
        self.engine = engine
        self.flows = flows
        self.ai = ai
        self.commands = {
            "startgrow": self._start_grow,
            "start_grow": self._start_grow,
            "flower": self._flower,
            "harvest": self._harvest,
            "results": self._results,
            "prompt": self._prompt,
            "help": self._help,
            "start": self._help,
            "id": self._id,
            "ask": self._ask,
        }

    async def reply(self, msg: InboundMessage, text: str) -> None:
        for chunk in split_message(text):
            await self.engine.send(msg.channel_id, chunk)

    async def dispatch(self, msg: InboundMessage) -> bool:
        """Route one inbound message. True when a command or a conversation consumed it."""
        keyword, args = parse_command(msg.content)
        handler = self.commands.get(keyword) if keyword else None
        if handler is not None:
            await self._run_command(keyword, handler, msg, args)
            return True

        try:
            return await self.engine.handle(
                msg.user_id, msg.content, msg.attachments, channel_id=msg.channel_id, message_id=msg.message_id
            )
        except Exception:
            log.exception("conversation step failed for user %s", msg.user_id)
            self.engine.store.clear(msg.user_id)
            await self.reply(msg, GENERIC_ERROR_TEXT)
            return True

    async def _run_command(self, keyword: str, handler, msg: InboundMessage, args: str) -> None:
        log.info("user %s: /%s in %s", msg.user_id, keyword, msg.channel_id)
        try:
            await handler(msg, args)
        except AlreadyActive as e:
            await self.reply(msg, already_active_text(e) + " ❌")
        except DomainPrecondition as e:
            await self.reply(msg, f"{e} ❌")
        except DeliveryFailure as e:
            log.warning("/%s for user %s: %s", keyword, msg.user_id, e)
        except Exception:
            log.exception("/%s failed for user %s", keyword, msg.user_id)
            await self.reply(msg, GENERIC_ERROR_TEXT)

    # --------------------
    # Commands
    # --------------------
    async def _start_grow(self, msg: InboundMessage, args: str) -> None:
        await self.flows.start_grow(msg.user_id, msg.channel_id, msg.is_direct, msg.message_id)

    async def _flower(self, msg: InboundMessage, args: str) -> None:
        await self.flows.flower(msg.user_id, msg.channel_id)

    async def _results(self, msg: InboundMessage, args: str) -> None:
        await self.flows.results(msg.user_id, msg.channel_id)

    async def _harvest(self, msg: InboundMessage, args: str) -> None:
        await self.reply(msg, self.flows.harvest(msg.user_id))

    async def _prompt(self, msg: InboundMessage, args: str) -> None:
        confirmation = await self.flows.prompt(msg.user_id, msg.channel_id, msg.is_direct)
        if confirmation:
            await self.reply(msg, confirmation)

    async def _help(self, msg: InboundMessage, args: str) -> None:
        await self.reply(msg, HELP_TEXT)

    async def _id(self, msg: InboundMessage, args: str) -> None:
        if not args:
            raise DomainPrecondition("Please provide a strain name. Usage: /id <strain name>, e.g. /id Blue Dream")
        await self._answer(msg, f"🔍 Looking up {args}...", self._require_ai().strain_info(args),
                           title=f"🌿 {args}")

    async def _ask(self, msg: InboundMessage, args: str) -> None:
        if not args:
            raise DomainPrecondition(
                "Please provide a question. Usage: /ask <your question>, attach photos to have them looked at."
            )
        images = [a.url for a in msg.attachments if isinstance(a, Attachment) and a.is_image]
        waiting = (
            f"🔍 Looking at your question and {len(images)} image(s)..." if images else "🔍 Thinking..."
        )
        await self._answer(msg, waiting, self._require_ai().ask(args, images), title="🌿 Grow expert answer")

    def _require_ai(self) -> AIClient:
        if self.ai is None:
            raise DomainPrecondition("AI answers are not enabled on this bot.")
        return self.ai

    async def _answer(self, msg: InboundMessage, waiting: str, pending, title: str) -> None:
        loading_id = await self.engine.send(msg.channel_id, waiting)
        try:
            answer = await pending
        except AIError as e:
            text = f"Sorry, I couldn't get an answer: {e}"
        else:
            text = f"{title}\n\n{answer}\n\nAnswer provided by AI, results may vary."
        finally:
            if loading_id is not None:
                try:
                    await self.engine.transport.delete(msg.channel_id, loading_id)
                except Exception as e:
                    log.debug("could not delete loading message: %s", e)
        await self.reply(msg, text)
