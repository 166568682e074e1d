from typing import Any, Callable, Dict, Iterable, Iterator, Optional, Tuple

from pairchat.repositories.base import MessageLog
from pairchat.schemas.message import Message
from pairchat.utils.subscription import Subscription


class MessageView:
    """
    Ordered, de-duplicated snapshot of a conversation's messages.

    Iterating yields messages oldest first (causal order, for logic).
    ``descending()`` walks the same data newest first (for display). Both can be
    restarted any number of times.
    """

    __slots__ = ("_items",)

    def __init__(self, items: Tuple[Message, ...] = ()) -> None:
        self._items = items

    def __iter__(self) -> Iterator[Message]:
        return iter(self._items)

    def __len__(self) -> int:
        return len(self._items)

    def __getitem__(self, index):
        return self._items[index]

    def __reversed__(self) -> Iterator[Message]:
        return reversed(self._items)

    def __eq__(self, other) -> bool:
        if isinstance(other, MessageView):
            return self._items == other._items
        return NotImplemented

    def __repr__(self) -> str:
        return f"MessageView({len(self._items)} messages)"

    def ascending(self) -> Iterator[Message]:
        return iter(self._items)

    def descending(self) -> Iterator[Message]:
        return reversed(self._items)

    @property
    def latest(self) -> Optional[Message]:
        return self._items[-1] if self._items else None

    def ids(self) -> Tuple[str, ...]:
        return tuple(m.id for m in self._items)


class MessageProjection:

    def __init__(self, messages: MessageLog) -> None:
        self._messages = messages

    @staticmethod
    def project(messages: Iterable[Message]) -> MessageView:
        unique: Dict[str, Message] = {}
        for message in messages:
            unique[message.id] = message
        return MessageView(tuple(sorted(unique.values(), key=lambda m: m.sort_key)))

    async def subscribe_messages(
        self,
        conversation_key: str,
        on_batch: Callable[[MessageView], Any],
        on_error: Optional[Callable[[Exception], Any]] = None,
    ) -> Subscription:
        def _deliver(batch):
            return on_batch(self.project(batch))

        return await self._messages.subscribe(conversation_key, _deliver, on_error)
