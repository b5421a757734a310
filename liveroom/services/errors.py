"""Exceptions raised by the live room core.

Every failure here is scoped to one room session: the caller can always
``leave()`` and ``join()`` again to reset.
"""


class LiveRoomError(Exception):
    """Base class for room session errors."""


class RoomNotConfigured(LiveRoomError):
    """The room descriptor or the local identity is missing what joining needs."""


class MediaPermissionError(LiveRoomError):
    """Camera, microphone or display capture was denied or is unavailable."""


class TransportError(LiveRoomError):
    """The realtime channel could not subscribe or deliver a frame."""


class NegotiationError(LiveRoomError):
    """A session description could not be created or applied."""


class AuthorizationError(LiveRoomError):
    """The local user is not allowed to perform the requested action."""


class HostPrivilegeRequired(AuthorizationError):
    """A host-only action was attempted by a non-host participant."""

    def __init__(self, action: str) -> None:
        super().__init__(f"Only the host can {action}")
        self.action = action
