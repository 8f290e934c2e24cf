import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional, Protocol, Sequence, Union

log = logging.getLogger("growbuddy.conversation")

CONVERSATION_TIMEOUT = 10 * 60  # seconds of inactivity
SWEEP_INTERVAL = 5 * 60

FINALIZE_FAILED_TEXT = "Something went wrong while saving. Your answers were discarded, please try again. ❌"


# --------------------
# Errors
# --------------------
class ConversationError(Exception):
    pass


class AlreadyActive(ConversationError):
    def __init__(self, user_id, definition_id: str, requested: Optional[str] = None):
        self.user_id = user_id
        self.definition_id = definition_id
        self.requested = requested
        super().__init__(f"user {user_id} already has an active '{definition_id}' conversation")


class NoActiveConversation(ConversationError):
    def __init__(self, user_id):
        self.user_id = user_id
        super().__init__(f"user {user_id} has no active conversation")


class FinalizeFailure(ConversationError):
    pass


class DomainPrecondition(Exception):
    """Unmet domain prerequisite. The message is shown to the user as is."""


class DeliveryFailure(Exception):
    pass


# --------------------
# Values
# --------------------
@dataclass(frozen=True)
class Attachment:
    url: str
    content_type: Optional[str] = None

    @property
    def is_image(self) -> bool:
        return bool(self.content_type) and self.content_type.startswith("image/")


@dataclass(frozen=True)
class Rejection:
    message: str


@dataclass
class Completion:
    text: str
    follow_up: Optional[Callable[[], Awaitable[None]]] = None


@dataclass
class Conversation:
    user_id: Any
    definition_id: str
    channel_id: Any
    step_index: int = 0
    data: dict = field(default_factory=dict)
    origin_channel: Any = None
    created_at: float = 0.0
    last_activity_at: float = 0.0
    message_ids: list = field(default_factory=list)

    def delivery_targets(self) -> list:
        targets = [self.channel_id]
        if self.origin_channel is not None and self.origin_channel != self.channel_id:
            targets.append(self.origin_channel)
        return targets

    def track(self, chat_id, message_id) -> None:
        if chat_id is not None and message_id is not None:
            self.message_ids.append((chat_id, message_id))


Validator = Callable[[str, Sequence[Attachment]], Any]


@dataclass(frozen=True)
class Step:
    field: str
    prompt: Union[str, Callable[[dict], str]]
    validate: Validator
    kind: str = "text"

    def render(self, data: dict) -> str:
        if callable(self.prompt):
            return self.prompt(data)
        return self.prompt


@dataclass(frozen=True)
class ConversationDefinition:
    id: str
    steps: tuple
    finalize: Callable[[Any, dict], Awaitable[Completion]]
    cleanup: bool = False

    def __post_init__(self):
        if not self.steps:
            raise ValueError(f"definition '{self.id}' has no steps")

    def is_last(self, index: int) -> bool:
        return index == len(self.steps) - 1


class Transport(Protocol):
    async def send(self, chat_id, text: str) -> Optional[int]:
        ...

    async def delete(self, chat_id, message_id) -> None:
        ...


# --------------------
# Store
# --------------------
class ConversationStore:
    """At most one conversation per user, expired after `timeout` seconds of inactivity.

    Expired entries are invisible to `get` (and dropped on read); `sweep`
    removes the ones nobody reads again.
    """

    def __init__(self, timeout: float = CONVERSATION_TIMEOUT, clock: Callable[[], float] = time.monotonic):
        self.timeout = timeout
        self._clock = clock
        self._conversations: dict = {}

    def __len__(self) -> int:
        return len(self._conversations)

    def _expired(self, conv: Conversation, now: float) -> bool:
        return now - conv.last_activity_at > self.timeout

    def start(self, user_id, definition_id: str, channel_id, initial_data: Optional[dict] = None,
              origin_channel=None) -> Conversation:
        existing = self.get(user_id)
        if existing is not None:
            raise AlreadyActive(user_id, existing.definition_id, definition_id)
        now = self._clock()
        conv = Conversation(
            user_id=user_id,
            definition_id=definition_id,
            channel_id=channel_id,
            data=dict(initial_data or {}),
            origin_channel=origin_channel,
            created_at=now,
            last_activity_at=now,
        )
        self._conversations[user_id] = conv
        return conv

    def get(self, user_id) -> Optional[Conversation]:
        conv = self._conversations.get(user_id)
        if conv is None:
            return None
        if self._expired(conv, self._clock()):
            log.info("conversation '%s' of user %s expired", conv.definition_id, user_id)
            del self._conversations[user_id]
            return None
        return conv

    def advance(self, user_id, patch: dict, next_step_index: int) -> Conversation:
        conv = self.get(user_id)
        if conv is None:
            raise NoActiveConversation(user_id)
        conv.data.update(patch)
        conv.step_index = next_step_index
        conv.last_activity_at = self._clock()
        return conv

    def touch(self, user_id) -> None:
        conv = self.get(user_id)
        if conv is None:
            raise NoActiveConversation(user_id)
        conv.last_activity_at = self._clock()

    def clear(self, user_id) -> Optional[Conversation]:
        return self._conversations.pop(user_id, None)

    def sweep(self) -> int:
        now = self._clock()
        stale = [uid for uid, conv in self._conversations.items() if self._expired(conv, now)]
        for uid in stale:
            del self._conversations[uid]
        if stale:
            log.info("swept %d expired conversation(s)", len(stale))
        return len(stale)


# --------------------
# Engine
# --------------------
class ConversationEngine:
    def __init__(self, store: ConversationStore, transport: Transport,
                 reset_on_rejection: bool = False, delete_delay: float = 0.25):
        self.store = store
        self.transport = transport
        self.reset_on_rejection = reset_on_rejection
        self.delete_delay = delete_delay
        self._definitions: dict = {}

    def register(self, definition: ConversationDefinition) -> None:
        self._definitions[definition.id] = definition

    def definition(self, definition_id: str) -> ConversationDefinition:
        return self._definitions[definition_id]

    async def send(self, chat_id, text: str, conv: Optional[Conversation] = None) -> Optional[int]:
        """Delivery failures are logged and reported as None, never raised."""
        try:
            message_id = await self.transport.send(chat_id, text)
        except Exception as e:
            log.warning("delivery to %s failed: %s: %s", chat_id, type(e).__name__, e)
            return None
        if conv is not None:
            conv.track(chat_id, message_id)
        return message_id

    async def begin(self, user_id, definition_id: str, channel_id, data: Optional[dict] = None,
                    origin_channel=None, intro: Optional[str] = None) -> Conversation:
        """Start a conversation and send its first prompt.

        Raises AlreadyActive (store untouched) and DeliveryFailure (the new
        conversation is cleared again, since the user never saw the prompt).
        """
        definition = self.definition(definition_id)
        conv = self.store.start(user_id, definition_id, channel_id, data, origin_channel)
        log.info("user %s started '%s' in %s", user_id, definition_id, channel_id)

        prompt = definition.steps[0].render(conv.data)
        text = f"{intro}\n\n{prompt}" if intro else prompt
        try:
            message_id = await self.transport.send(channel_id, text)
        except Exception as e:
            self.store.clear(user_id)
            raise DeliveryFailure(f"could not deliver first prompt to {channel_id}: {e}") from e
        conv.track(channel_id, message_id)
        return conv

    async def handle(self, user_id, content: str, attachments: Sequence[Attachment] = (),
                     channel_id=None, message_id=None) -> bool:
        conv = self.store.get(user_id)
        if conv is None:
            return False
        if channel_id is not None and channel_id != conv.channel_id:
            return False

        conv.track(conv.channel_id, message_id)
        definition = self.definition(conv.definition_id)
        step = definition.steps[conv.step_index]

        result = step.validate(content or "", attachments)
        if isinstance(result, Rejection):
            if self.reset_on_rejection:
                self.store.touch(user_id)
            await self.send(conv.channel_id, f"{result.message}\n\n{step.render(conv.data)}", conv)
            return True

        next_index = conv.step_index + 1
        conv = self.store.advance(user_id, {step.field: result}, next_index)
        if next_index < len(definition.steps):
            await self.send(conv.channel_id, definition.steps[next_index].render(conv.data), conv)
            return True

        await self._complete(conv, definition)
        return True

    async def _complete(self, conv: Conversation, definition: ConversationDefinition) -> None:
        completion = None
        failure_text = FINALIZE_FAILED_TEXT
        try:
            completion = await definition.finalize(conv.user_id, dict(conv.data))
        except DomainPrecondition as e:
            failure_text = f"{e} ❌"
            log.warning("finalize of '%s' for user %s refused: %s", definition.id, conv.user_id, e)
        except Exception:
            log.exception("finalize of '%s' failed for user %s", definition.id, conv.user_id)
        finally:
            self.store.clear(conv.user_id)

        if completion is None:
            await self.send(conv.channel_id, failure_text)
            return

        log.info("user %s completed '%s'", conv.user_id, definition.id)
        for target in conv.delivery_targets():
            await self.send(target, completion.text)

        if definition.cleanup:
            await self.cleanup(conv)

        if completion.follow_up is not None:
            try:
                await completion.follow_up()
            except Exception:
                log.exception("follow-up of '%s' failed for user %s", definition.id, conv.user_id)

    async def cleanup(self, conv: Conversation) -> int:
        deleted = 0
        for chat_id, message_id in conv.message_ids:
            try:
                await self.transport.delete(chat_id, message_id)
                deleted += 1
            except Exception as e:
                log.debug("could not delete message %s in %s: %s", message_id, chat_id, e)
            if self.delete_delay:
                await asyncio.sleep(self.delete_delay)
        return deleted
