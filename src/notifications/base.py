"""Notification channels for new bargain detections."""

from abc import ABC, abstractmethod
from typing import Any


class Notifier(ABC):
    """Base protocol for bargain alert channels."""

    @property
    def configured(self) -> bool:
        """Whether the channel has what it needs to deliver messages."""

        return True

    @abstractmethod
    async def send(
        self, message: str, *, title: str | None = None, **kwargs: Any
    ) -> bool:
        """Deliver one alert message.

        Args:
            message: Alert body, one line per detection.
            title: Optional header, e.g. the number of new bargains.
            **kwargs: Channel-specific options.

        Returns:
            True only if the channel accepted the message. Callers mark
            detections as notified on True and retry them next run otherwise.
        """
        ...
