"""Topic layout under the configured namespace prefix."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Optional

from . import constants

CONTROL = "control"
SETTINGS = "settings"
TEMP = "temp"
STATE = "state"
STATUS = "status"

COMMAND_CHANNELS = (CONTROL, SETTINGS)

# Observer event name -> broker channel
OBSERVER_EVENTS: Dict[str, str] = {
    "control": CONTROL,
    "settings": SETTINGS,
    "temperature": TEMP,
    "state": STATE,
}


@dataclass(frozen=True, slots=True)
class TopicNamespace:
    prefix: str = constants.DEFAULT_TOPIC_PREFIX

    def __post_init__(self) -> None:
        cleaned = self.prefix.strip().strip("/")
        if not cleaned or "#" in cleaned or "+" in cleaned:
            raise ValueError(f"invalid topic prefix {self.prefix!r}")
        object.__setattr__(self, "prefix", cleaned)

    @property
    def wildcard(self) -> str:
        return f"{self.prefix}/#"

    def topic(self, channel: str) -> str:
        return f"{self.prefix}/{channel}"

    def contains(self, topic: str) -> bool:
        return topic.startswith(f"{self.prefix}/")

    def channel_of(self, topic: str) -> Optional[str]:
        """Return the channel for a topic directly under the prefix."""

        if not self.contains(topic):
            return None
        channel = topic[len(self.prefix) + 1 :]
        if not channel or "/" in channel:
            return None
        return channel
