"""Event registrations held by a module."""

import re
from collections.abc import Iterator
from dataclasses import dataclass


@dataclass(frozen=True)
class Registration:
    """A subscription: patterns over sender identity and event type.

    Attributes:
        source_pattern: Compiled pattern tested against the event's source.
        type_pattern: Compiled pattern tested against the event's type.
        registration_id: The message_id of the register envelope.
    """

    source_pattern: re.Pattern[str]
    type_pattern: re.Pattern[str]
    registration_id: int

    @classmethod
    def compile(cls, source_pattern: str, type_pattern: str, registration_id: int) -> "Registration":
        return cls(re.compile(source_pattern), re.compile(type_pattern), registration_id)

    def matches(self, source: str, event_type: str) -> bool:
        """Search semantics: a pattern matches anywhere unless anchored."""
        return (
            self.source_pattern.search(source) is not None
            and self.type_pattern.search(event_type) is not None
        )


class RegistrationTable:
    """Active registrations of a single module, in registration order.

    Registrations are independent: two overlapping registrations both match,
    and an event is delivered once per match.
    """

    def __init__(self) -> None:
        self._registrations: list[Registration] = []

    def add(self, registration: Registration) -> None:
        self._registrations.append(registration)

    def remove(self, registration_id: int) -> int:
        """Remove registrations with the given id.

        Returns:
            Number of registrations removed (0 if none matched).
        """
        before = len(self._registrations)
        self._registrations = [
            r for r in self._registrations if r.registration_id != registration_id
        ]
        return before - len(self._registrations)

    def matching(self, source: str, event_type: str) -> Iterator[Registration]:
        """Yield every registration matching the event, duplicates included."""
        for registration in self._registrations:
            if registration.matches(source, event_type):
                yield registration

    def clear(self) -> None:
        self._registrations.clear()

    def ids(self) -> list[int]:
        return [r.registration_id for r in self._registrations]

    def __iter__(self) -> Iterator[Registration]:
        return iter(list(self._registrations))

    def __len__(self) -> int:
        return len(self._registrations)
