"""Load the traffic classes.

The configuration is a list of traffic classes. It can be given as python
objects or as text. The text is read with YAML which accepts JSON as well as
the relaxed flow syntax used on command lines:

.. code-block:: yaml

    [{
      sessions: '0-1',
      device: eth0,
      protocol: udp,
      up: {rate: 1000, delay: 50, loss: 5, queue: 10},
      down: [
        {rate: 2000, delay: 50, loss: 2, queue: 20},
        {rate: 1000, delay: 50, loss: 2, queue: 20, at: 60}
      ]
    }]
"""
import logging
from typing import Any, List, Sequence, Union

import yaml
from jsonschema.exceptions import best_match

from throttler.errors import ConfigParseError
from throttler.objects import TrafficClassConfig
from throttler.schema import ClassValidator

logger = logging.getLogger(__name__)

ConfigurationLike = Union[None, str, Sequence[Any]]


def _validate_class(index: int, data: Any) -> TrafficClassConfig:
    """Build one class, an invalid class is replaced by an empty one.

    The empty class keeps the index (hence the mark) of the following ones
    and matches no session.
    """
    if isinstance(data, TrafficClassConfig):
        return data
    error = best_match(ClassValidator.iter_errors(data))
    if error is not None:
        path = "/".join(str(p) for p in error.absolute_path)
        e = ConfigParseError(
            f"Invalid class {index} at {path or '.'}: {error.message}", data
        )
        logger.error("Skipping class %s: %s", index, e)
        return TrafficClassConfig()
    return TrafficClassConfig.from_dict(data)


def load_configuration(config: ConfigurationLike) -> List[TrafficClassConfig]:
    """Build the traffic classes.

    A class that doesn't follow the schema is logged and replaced by an
    empty class (no session, no rule), the other classes are kept.

    Args:
        config: the configuration text, a list of dicts or a list of
            :py:class:`~throttler.objects.TrafficClassConfig`.
            None or an empty string means no traffic class.

    Raises:
        ConfigParseError: if the text isn't valid YAML or the configuration
            isn't a list
    """
    if config is None:
        return []
    if isinstance(config, str):
        if not config.strip():
            return []
        try:
            config = yaml.safe_load(config)
        except yaml.YAMLError as e:
            raise ConfigParseError(f"Unable to parse the configuration: {e}", config)
        if config is None:
            return []
    if not isinstance(config, (list, tuple)):
        raise ConfigParseError("The configuration must be a list of classes", config)
    classes = [_validate_class(i, c) for i, c in enumerate(config)]
    logger.debug("configuration = %s", classes)
    return classes
