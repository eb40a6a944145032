from dataclasses import dataclass
from typing import Optional

from errors import InvalidInput, NoIdentity
from logging_config import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class Identity:
    display_name: str


class SessionContext:
    """Identity and current room for one client session. Never persisted."""

    def __init__(self, display_name: Optional[str] = None):
        self.identity: Optional[Identity] = None
        self.current_room_id: Optional[str] = None
        if display_name is not None:
            self.set_identity(display_name)

    def set_identity(self, display_name: str) -> Identity:
        name = (display_name or "").strip()
        if not name:
            raise InvalidInput("Please enter your name")
        self.identity = Identity(display_name=name)
        logger.debug(f"Session identity set to {name}")
        return self.identity

    def require_identity(self) -> Identity:
        if self.identity is None:
            raise NoIdentity("No display name set for this session")
        return self.identity

    def enter_room(self, room_id: str) -> Identity:
        identity = self.require_identity()
        self.current_room_id = room_id
        return identity

    def leave_room(self) -> None:
        self.current_room_id = None

    def reset(self) -> None:
        self.identity = None
        self.current_room_id = None
