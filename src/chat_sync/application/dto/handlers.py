from __future__ import annotations

from dataclasses import dataclass
from typing import Callable

from chat_sync.domain.entities.message import ConversationMessage
from chat_sync.domain.entities.reaction import Reaction
from chat_sync.domain.entities.read_receipt import ReadReceipt


@dataclass(slots=True)
class MessageHandlers:
    """Callbacks the UI layer registers with ``MessageStreamClient.subscribe``.

    ``on_message_updated`` receives the new record and the id it replaces
    (the temporary id when an optimistic send is confirmed, otherwise its own id).
    """

    on_new_message: Callable[[ConversationMessage], None] | None = None
    on_message_updated: Callable[[ConversationMessage, str], None] | None = None
    on_message_deleted: Callable[[str], None] | None = None
    on_reaction_added: Callable[[Reaction], None] | None = None
    on_reaction_removed: Callable[[Reaction], None] | None = None
    on_read_receipt: Callable[[ReadReceipt], None] | None = None
    on_connection_change: Callable[[bool], None] | None = None


@dataclass(frozen=True, slots=True)
class SendResult:
    temp_id: str
    message: ConversationMessage | None = None
    error: Exception | None = None

    @property
    def delivered(self) -> bool:
        return self.message is not None
