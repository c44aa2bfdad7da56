"""
Transcript Assembler
Builds an ordered, deduplicated conversation view from delta/done protocol events.

Turns are keyed by provider item identifier and kept in creation order. Events can
arrive in any order across types, so every mutation is an idempotent upsert or an
append onto the identified turn:
- upsert never lets a shorter final text clobber a longer in-progress transcript
- a user turn without text stays pending until any text arrives
- events without an item identifier fall back to the role's active item, and as a
  last resort to a synthesized identifier, so nothing is silently dropped
"""

import logging
import time
from typing import Callable, Dict, List, Optional

from voice_screener.core.events import (
    AssistantTranscriptDelta,
    AssistantTranscriptDone,
    InputAudioCommitted,
    ItemEvent,
    ServerEvent,
    UserTranscriptDelta,
    UserTranscriptDone,
)
from voice_screener.core.models import ConversationTurn, Role

logger = logging.getLogger(__name__)


class ActiveItemTracker:
    """
    Per-role pointer to the item currently receiving content.

    Two states: no active item, or ActiveItem(item_id).
    """

    def __init__(self, role: Role):
        self.role = role
        self.item_id: Optional[str] = None

    @property
    def is_active(self) -> bool:
        return self.item_id is not None

    def activate(self, item_id: str):
        self.item_id = item_id

    def clear(self):
        self.item_id = None

    def __repr__(self) -> str:
        if self.item_id is None:
            return f"NoActiveItem({self.role.value})"
        return f"ActiveItem({self.role.value}, {self.item_id})"


class TranscriptAssembler:
    """
    Maintains the conversation turns for one interview session.

    Args:
        clock: Wall-clock source used when an identifier must be synthesized
    """

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._turns: Dict[str, ConversationTurn] = {}
        self._active: Dict[Role, ActiveItemTracker] = {
            Role.USER: ActiveItemTracker(Role.USER),
            Role.ASSISTANT: ActiveItemTracker(Role.ASSISTANT),
        }
        self._system_count = 0

    # ---------------------------------------------------------------- accessors

    @property
    def turns(self) -> List[ConversationTurn]:
        return list(self._turns.values())

    def get(self, item_id: str) -> Optional[ConversationTurn]:
        return self._turns.get(item_id)

    def active_item(self, role: Role) -> Optional[str]:
        tracker = self._active.get(role)
        return tracker.item_id if tracker else None

    def reset(self):
        """Forget every turn and pointer (start of a new interview)."""
        self._turns.clear()
        for tracker in self._active.values():
            tracker.clear()
        self._system_count = 0

    # ---------------------------------------------------------------- mutation

    def _get_or_create(self, item_id: str, role: Role) -> ConversationTurn:
        turn = self._turns.get(item_id)
        if turn is None:
            # Role is fixed by whichever event first referenced the item
            turn = ConversationTurn(item_id=item_id, role=role, pending=role == Role.USER)
            self._turns[item_id] = turn
        return turn

    def upsert(self, item_id: Optional[str], role: Role, text: Optional[str]) -> Optional[ConversationTurn]:
        """
        Set the full text of a turn.

        The stored text is only replaced when the new text is at least as long as the
        cached one (or nothing is cached yet).
        """
        if not item_id:
            return None

        turn = self._get_or_create(item_id, role)
        if text:
            if len(text) >= len(turn.text) or not turn.text:
                turn.text = text
            turn.pending = False
        elif not turn.text and turn.role == Role.USER:
            turn.pending = True
        return turn

    def append(self, item_id: Optional[str], role: Role, delta: Optional[str]) -> Optional[ConversationTurn]:
        """Concatenate a delta fragment onto a turn, creating it if needed."""
        if not item_id or not delta:
            return None

        turn = self._get_or_create(item_id, role)
        turn.text = turn.text + delta
        turn.pending = False
        return turn

    def add_system_message(self, text: str) -> ConversationTurn:
        """Append a visible system line (errors, session notices)."""
        self._system_count += 1
        turn = ConversationTurn(item_id=f"system-{self._system_count}", role=Role.SYSTEM, text=text)
        self._turns[turn.item_id] = turn
        return turn

    # ---------------------------------------------------------------- events

    def resolve_item_id(self, role: Role, item_id: Optional[str], response_id: Optional[str] = None) -> str:
        """Explicit id, else the role's active item, else a synthesized one."""
        if item_id:
            return item_id
        active = self._active[role].item_id
        if active:
            return active
        suffix = response_id or str(int(self._clock() * 1000))
        synthesized = f"{role.value}-{suffix}"
        logger.debug(f"Synthesized transcript item id {synthesized}")
        return synthesized

    def _item_started(self, role: Role, item_id: str):
        if role == Role.ASSISTANT:
            self._active[Role.ASSISTANT].activate(item_id)
            self._active[Role.USER].clear()
        elif role == Role.USER:
            self._active[Role.USER].activate(item_id)
            self._active[Role.ASSISTANT].clear()

    def handle(self, event: ServerEvent):
        """Apply one protocol event; events that carry no transcript are ignored."""
        if isinstance(event, ItemEvent):
            if event.role is None:
                return
            self.upsert(event.item_id, event.role, event.text)
            if event.stage in ("created", "added"):
                self._item_started(event.role, event.item_id)

        elif isinstance(event, AssistantTranscriptDelta):
            target = self.resolve_item_id(Role.ASSISTANT, event.item_id, event.response_id)
            self._active[Role.ASSISTANT].activate(target)
            self.append(target, Role.ASSISTANT, event.delta)

        elif isinstance(event, AssistantTranscriptDone):
            target = self.resolve_item_id(Role.ASSISTANT, event.item_id, event.response_id)
            self.upsert(target, Role.ASSISTANT, event.text)
            self._active[Role.ASSISTANT].clear()

        elif isinstance(event, UserTranscriptDelta):
            target = self.resolve_item_id(Role.USER, event.item_id)
            self._active[Role.USER].activate(target)
            self.append(target, Role.USER, event.delta)

        elif isinstance(event, UserTranscriptDone):
            if event.text:
                target = self.resolve_item_id(Role.USER, event.item_id)
                self.upsert(target, Role.USER, event.text)
            self._active[Role.USER].clear()

        elif isinstance(event, InputAudioCommitted):
            if event.text:
                target = event.item_id or self.resolve_item_id(Role.USER, None)
                self.upsert(target, Role.USER, event.text)
                self._active[Role.USER].activate(target)

    # ---------------------------------------------------------------- export

    def export(self) -> str:
        """
        Render the transcript as "ROLE: text" lines in creation order.

        Empty turns and unresolved placeholders are skipped.
        """
        lines = []
        for turn in self._turns.values():
            content = turn.text.strip()
            if content:
                lines.append(f"{turn.role.value.upper()}: {content}")
        return "\n".join(lines)
