from __future__ import annotations

from droppilot.config.constants import ErrorCode


class MinerException(Exception):
    """
    Base exception class for this application.
    """
    def __init__(self, *args: object):
        if args:
            super().__init__(*args)
        else:
            super().__init__("Unknown farmer error")


class ExitRequest(MinerException):
    """
    Raised when the application is requested to exit from outside of the main loop.

    Intended for internal use only.
    """
    def __init__(self):
        super().__init__("Application was requested to exit")


class AuthInvalid(MinerException):
    """
    The remote side rejected the session token.

    Never retried locally: whoever catches it has to de-authenticate.
    """
    def __init__(self, message: str | None = None):
        super().__init__(message or "Session token was rejected")
        self.message: str | None = message


class RemoteError(MinerException):
    """
    Network or remote-side failure, carrying a stable error code
    and a human readable message. The session stays valid.
    """
    def __init__(self, code: ErrorCode, message: str | None = None):
        super().__init__(message or code.value)
        self.code: ErrorCode = code
        self.message: str = message or code.value


class InvalidResponse(RemoteError):
    """
    The remote side answered, but the payload could not be understood.
    """


class ClaimFailed(RemoteError):
    """
    A single drop could not be claimed.
    """
    def __init__(self, message: str | None = None):
        super().__init__(ErrorCode.CLAIM_FAILED, message or "Drop claim failed")


class GQLException(RemoteError):
    def __init__(self, message: str):
        super().__init__(ErrorCode.GQL_FAILED, message)


class WebsocketClosed(MinerException):
    """
    The websocket connection got closed.

    `received` tells apart a close initiated by the remote side from our own.
    """
    def __init__(self, *args: object, received: bool = False, raw_message: object = None):
        super().__init__(*args)
        self.received: bool = received
        self.raw_message: object = raw_message
