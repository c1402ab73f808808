"""
Manage the settings of the throttler.
"""
import copy
import logging
from contextlib import contextmanager
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)

_config = dict(
    sudo="sudo -n",
    ifb_device="ifb0",
    default_rate="1Gbit",
    launcher_dir="/tmp",
    mtu=1500,
    verbose=False,
)


def get_config() -> Dict:
    """Get (a copy of) the current config."""
    return copy.deepcopy(_config)


def _set(key: str, value: Optional[Any]):
    if value is not None:
        _config[key] = value


def set_config(
    sudo: Optional[str] = None,
    ifb_device: Optional[str] = None,
    default_rate: Optional[str] = None,
    launcher_dir: Optional[str] = None,
    mtu: Optional[int] = None,
    verbose: Optional[bool] = None,
):
    """Set a specific config value.

    Args:
        sudo: prefix of every command mutating the kernel state.
            The empty string disables it (e.g when running as root).
            Passwordless privileges must be provisioned out of band.
        ifb_device: name of the virtual device the inbound traffic is
            redirected to.
        default_rate: rate and ceil of the unconstrained HTB classes.
            Must be far above any configured rate.
        launcher_dir: directory where the launcher scripts are written
        mtu: packet size used to compute the default netem queue length
        verbose: log every command and its output (debug level)
    """
    _set("sudo", sudo)
    _set("ifb_device", ifb_device)
    _set("default_rate", default_rate)
    _set("launcher_dir", launcher_dir)
    _set("mtu", mtu)
    _set("verbose", verbose)

    logger.debug("config = %s", get_config())


@contextmanager
def config_context(**new_config):
    """A context manager to manage a config specific to a portion of code.

    The original config is restored when exiting the context manager.

    Args:
        new_config: any keyword argument supported by
            :py:func:`~throttler.config.set_config`

    Examples:

        .. code-block:: python

            from throttler.config import config_context

            ...
            with config_context(sudo=""):
                # we are root already
                ...

            # the config goes back to its previous state here
    """
    old_config = get_config()
    set_config(**new_config)
    try:
        yield
    finally:
        set_config(**old_config)
