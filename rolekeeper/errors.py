"""Errors raised by the role lifecycle."""
from __future__ import annotations


class TimedRoleError(Exception):
    """Base class for every lifecycle failure."""

    user_message = "Something went wrong, please try again later."


class UserError(TimedRoleError):
    """A request the acting member can fix; nothing was changed."""

    def __init__(self, user_message: str | None = None) -> None:
        if user_message:
            self.user_message = user_message
        super().__init__(self.user_message)


class AlreadyActive(UserError):
    def __init__(self, role_name: str) -> None:
        self.role_name = role_name
        super().__init__(f"You already hold **{role_name}**. Remove it first.")


class NoActiveGrant(UserError):
    user_message = "You have no active role to remove."


class NotOwner(UserError):
    user_message = "This action is not available to you!"


class StaleRequest(UserError):
    user_message = "This request has already been handled."


class UnknownRoleChoice(UserError):
    def __init__(self, choice: str) -> None:
        self.choice = choice
        super().__init__("Unknown role.")


class GrantNotFound(UserError):
    def __init__(self, grant_id: int) -> None:
        self.grant_id = grant_id
        super().__init__("That role record no longer exists.")


class MalformedCommand(UserError):
    def __init__(self, custom_id: str) -> None:
        self.custom_id = custom_id
        super().__init__("Could not process the request: invalid format.")


class PlatformError(TimedRoleError):
    """A chat platform call (role edit, message post/edit/delete) failed."""

    def __init__(self, operation: str, detail: str = "", status: int | None = None) -> None:
        self.operation = operation
        self.status = status
        super().__init__(f"{operation} failed: {detail}" if detail else f"{operation} failed")


class PersistenceError(TimedRoleError):
    """The grant store could not complete an operation."""
