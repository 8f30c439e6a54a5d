"""Session restoration and validation."""

from droppilot.auth.auth_state import AuthState


__all__ = ["AuthState"]
