"""Process-wide directories shared between runtime components.

Two structures are visible to more than one component: the command registry
(one table of named command handlers per running application) and the topic
directory used for event broadcast. Both follow the same discipline: writers
serialise on a lock and publish a fresh mapping, readers grab the current
mapping without locking. Entries are inserted or removed, never edited.
"""

from __future__ import annotations

import threading
from types import MappingProxyType
from typing import Any, Callable, Dict, Hashable, List, Mapping, Optional, Tuple

from lumen.utils.logging import get_logger

logger = get_logger(__name__)

CommandHandler = Callable[..., Any]


class CommandTable:
    """Named command handlers for one application instance."""

    def __init__(self, name: str) -> None:
        self.name = name
        self._entries: Mapping[str, CommandHandler] = MappingProxyType({})
        self._lock = threading.Lock()

    def register(self, command: str, handler: CommandHandler) -> None:
        with self._lock:
            entries = dict(self._entries)
            entries[command] = handler
            self._entries = MappingProxyType(entries)

    def unregister(self, command: str) -> bool:
        with self._lock:
            if command not in self._entries:
                return False
            entries = dict(self._entries)
            del entries[command]
            self._entries = MappingProxyType(entries)
            return True

    def lookup(self, command: str) -> Optional[CommandHandler]:
        return self._entries.get(command)

    def names(self) -> List[str]:
        return sorted(self._entries)

    def __contains__(self, command: object) -> bool:
        return command in self._entries

    def __len__(self) -> int:
        return len(self._entries)


class CommandRegistry:
    """Directory of :class:`CommandTable` objects keyed by application."""

    def __init__(self) -> None:
        self._tables: Mapping[str, CommandTable] = MappingProxyType({})
        self._lock = threading.Lock()

    def ensure_table(self, name: str) -> CommandTable:
        """Return the table called ``name``, creating it when missing."""

        table = self._tables.get(name)
        if table is not None:
            return table
        with self._lock:
            table = self._tables.get(name)
            if table is None:
                table = CommandTable(name)
                tables = dict(self._tables)
                tables[name] = table
                self._tables = MappingProxyType(tables)
                logger.debug("command table created", extra={"app": name})
            return table

    def lookup_table(self, name: str) -> Optional[CommandTable]:
        return self._tables.get(name)

    def delete_table(self, name: str) -> bool:
        """Remove a table; deleting an unknown table is not an error."""

        with self._lock:
            if name not in self._tables:
                return False
            tables = dict(self._tables)
            del tables[name]
            self._tables = MappingProxyType(tables)
        logger.debug("command table deleted", extra={"app": name})
        return True

    def names(self) -> List[str]:
        return sorted(self._tables)


class TopicDirectory:
    """Subscribers per broadcast topic.

    A subscriber is any object with a ``send(message)`` method (runtime
    actors qualify) or a plain callable.
    """

    def __init__(self) -> None:
        self._topics: Mapping[str, Tuple[Any, ...]] = MappingProxyType({})
        self._lock = threading.Lock()

    def subscribe(self, topic: Hashable, subscriber: Any) -> None:
        key = _topic_key(topic)
        with self._lock:
            current = self._topics.get(key, ())
            if any(existing is subscriber for existing in current):
                return
            topics = dict(self._topics)
            topics[key] = current + (subscriber,)
            self._topics = MappingProxyType(topics)

    def unsubscribe(self, topic: Hashable, subscriber: Any) -> bool:
        key = _topic_key(topic)
        with self._lock:
            current = self._topics.get(key, ())
            remaining = tuple(existing for existing in current if existing is not subscriber)
            if len(remaining) == len(current):
                return False
            topics = dict(self._topics)
            if remaining:
                topics[key] = remaining
            else:
                del topics[key]
            self._topics = MappingProxyType(topics)
            return True

    def subscribers(self, topic: Hashable) -> Tuple[Any, ...]:
        return self._topics.get(_topic_key(topic), ())

    def topics(self) -> Dict[str, int]:
        return {topic: len(subs) for topic, subs in self._topics.items()}


def _topic_key(topic: Hashable) -> str:
    value = getattr(topic, "value", topic)
    return str(value)


command_registry = CommandRegistry()
topics = TopicDirectory()


def publish(topic: Hashable, payload: Any, *, directory: Optional[TopicDirectory] = None) -> int:
    """Send ``("event", topic, payload)`` to every current subscriber.

    Returns the number of subscribers that accepted the notification. A
    failing subscriber is logged and skipped.
    """

    directory = directory or topics
    key = _topic_key(topic)
    delivered = 0
    for subscriber in directory.subscribers(key):
        try:
            target = getattr(subscriber, "send", subscriber)
            if target(("event", key, payload)) is not False:
                delivered += 1
        except Exception:
            logger.exception("broadcast to subscriber failed", extra={"topic": key})
    return delivered


__all__ = [
    "CommandHandler",
    "CommandTable",
    "CommandRegistry",
    "TopicDirectory",
    "command_registry",
    "topics",
    "publish",
]
