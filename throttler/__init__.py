# flake8: noqa
from throttler.config import config_context, get_config, set_config
from throttler.configuration import load_configuration
from throttler.emul.utils import buffered_packets
from throttler.errors import (
    CommandFailure,
    ConfigParseError,
    InvalidStateError,
    ThrottlerError,
    UnsupportedPlatform,
)
from throttler.exit import (
    register_exit_handler,
    run_exit_handlers_now,
    unregister_exit_handler,
)
from throttler.objects import Direction, ThrottleRule, TrafficClassConfig
from throttler.sessions import resolve_session_index
from throttler.throttle import State, Throttler
from throttler.version import __version__
