"""Cart owner identity: a signed-in user or an anonymous guest session."""

from dataclasses import dataclass
from typing import ClassVar, Union


@dataclass(frozen=True)
class UserOwner:
    """Authenticated shopper, identified by user ID."""

    user_id: str

    column: ClassVar[str] = "user_id"

    @property
    def value(self) -> str:
        return self.user_id

    @property
    def key(self) -> str:
        return f"user:{self.user_id}"

    @property
    def is_guest(self) -> bool:
        return False


@dataclass(frozen=True)
class GuestOwner:
    """Anonymous shopper, identified by a client-held session ID."""

    session_id: str

    column: ClassVar[str] = "session_id"

    @property
    def value(self) -> str:
        return self.session_id

    @property
    def key(self) -> str:
        return f"guest:{self.session_id}"

    @property
    def is_guest(self) -> bool:
        return True


Owner = Union[UserOwner, GuestOwner]
