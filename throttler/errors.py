from typing import Optional


class ThrottlerError(Exception):
    pass


class ConfigParseError(ThrottlerError):
    def __init__(self, msg, value=None):
        super().__init__(msg)
        self.value = value


class CommandFailure(ThrottlerError):
    def __init__(self, command: str, rc: Optional[int], stderr: str = ""):
        super().__init__(f"{command} failed with code {rc}: {stderr}")
        self.command = command
        self.rc = rc
        self.stderr = stderr


class UnsupportedPlatform(ThrottlerError):
    def __init__(self, platform: str):
        super().__init__(f"Throttling is only supported on Linux (got {platform})")
        self.platform = platform


class InvalidStateError(ThrottlerError):
    def __init__(self, state):
        super().__init__(f"Operation not allowed in state {state.name}")
        self.state = state
