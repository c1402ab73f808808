"""Bind sessions to traffic classes."""
import logging
from typing import Callable, Optional, Sequence

from throttler.errors import ConfigParseError
from throttler.objects import TrafficClassConfig

logger = logging.getLogger(__name__)


def _int(token: str) -> int:
    try:
        return int(token.strip())
    except ValueError:
        raise ConfigParseError(f"Invalid session id: {token!r}", token)


def parse_sessions(sessions: Optional[str]) -> Callable[[int], bool]:
    """Build the membership test of a session specification.

    Args:
        sessions: ``"2"``, an inclusive range ``"0-3"`` or a list ``"1,4"``.
            None or the empty string matches no session.

    Raises:
        ConfigParseError: if an id isn't a number
    """
    if sessions is None or sessions == "":
        return lambda _: False
    if "-" in sessions:
        start, end = (_int(t) for t in sessions.split("-", 1))
        return lambda session_id: start <= session_id <= end
    if "," in sessions:
        ids = {_int(t) for t in sessions.split(",")}
        return lambda session_id: session_id in ids
    single = _int(sessions)
    return lambda session_id: session_id == single


def resolve_session_index(
    session_id: int, configs: Optional[Sequence[TrafficClassConfig]]
) -> Optional[int]:
    """Get the index of the first class matching ``session_id``.

    Classes are evaluated in their declaration order, the first match wins.
    A class whose session specification is malformed is skipped.

    Returns:
        The class index or None if no class matches.
    """
    if not configs:
        return None
    for index, config in enumerate(configs):
        try:
            matches = parse_sessions(config.sessions)
        except ConfigParseError as e:
            logger.error("Skipping class %s for session %s: %s", index, session_id, e)
            continue
        if matches(session_id):
            return index
    return None
