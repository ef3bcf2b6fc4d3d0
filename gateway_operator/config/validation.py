"""
Checks the operator tunables in config.yaml against the rules declared for
them in config_validation.yaml. A rule is a mapping with a "type" key. Any
other mapping is a section and its keys are checked with dotted names.
"""

# Standard
from typing import Any, Dict, List, Optional, Tuple
import builtins

# First Party
import aconfig
import alog

# Local
from .. import constants
from ..utils import nested_get

log = alog.use_channel("CONFG")

## Public ######################################################################


def get_invalid_params(
    config: aconfig.Config,
    validation_config: aconfig.Config,
) -> List[str]:
    """Get the dotted keys of every tunable that breaks its rule

    Args:
        config:  aconfig.Config
            The loaded config including env overrides
        validation_config:  aconfig.Config
            The rules, laid out like the config

    Returns:
        invalid_params:  List[str]
            The keys of the tunables that failed, in file order
    """
    invalid_params = []
    for key, rule in _collect_rules(validation_config):
        value = nested_get(config, key)
        if not rule.check(value):
            log.warning("Config key [%s] has invalid value [%s]", key, value)
            invalid_params.append(key)
    return invalid_params


## Rules #######################################################################

# pylint: disable=too-few-public-methods


class _Rule:
    """A type check on one tunable. Subclasses narrow the accepted values."""

    accepted: Tuple[type, ...] = ()

    def __init__(self, optional: bool = False):
        self.optional = optional

    def check(self, value: Any) -> bool:
        if value is None and self.optional:
            return True
        # bool is an int subclass and never counts as a number
        if isinstance(value, bool) and bool not in self.accepted:
            return False
        return isinstance(value, self.accepted) and self._accepts(value)

    def _accepts(self, value: Any) -> bool:
        return True


class _Bounded(_Rule):
    """Durations, delays and counts with inclusive bounds"""

    accepted = (int, float)

    def __init__(
        self,
        min: Optional[float] = None,  # pylint: disable=redefined-builtin
        max: Optional[float] = None,  # pylint: disable=redefined-builtin
        **kwargs,
    ):
        super().__init__(**kwargs)
        self.low = min
        self.high = max

    def _accepts(self, value) -> bool:
        if self.low is not None and value < self.low:
            return False
        return self.high is None or value <= self.high


class _Count(_Bounded):
    accepted = (int,)


class _Sized(_Rule):
    """Strings and lists with a length range. List items may be typed."""

    def __init__(
        self,
        min_len: Optional[int] = None,
        max_len: Optional[int] = None,
        item_type: Optional[str] = None,
        **kwargs,
    ):
        super().__init__(**kwargs)
        self.min_len = min_len
        self.max_len = max_len
        self.item_type = None
        if item_type is not None:
            assert hasattr(builtins, item_type), f"Unknown item_type {item_type}"
            self.item_type = getattr(builtins, item_type)

    def _accepts(self, value) -> bool:
        if self.min_len is not None and len(value) < self.min_len:
            return False
        if self.max_len is not None and len(value) > self.max_len:
            return False
        return self.item_type is None or all(
            isinstance(item, self.item_type) for item in value
        )


class _Text(_Sized):
    accepted = (str,)


class _Sequence(_Sized):
    accepted = (list,)


class _Flag(_Rule):
    accepted = (bool,)


class _Choice(_Rule):
    """One of a fixed set of values, such as a log level"""

    accepted = (str, int, type(None))

    def __init__(self, values: List[Any], **kwargs):
        super().__init__(**kwargs)
        assert isinstance(values, list) and values, "A choice needs values"
        self.values = values

    def _accepts(self, value) -> bool:
        return value in self.values


# pylint: enable=too-few-public-methods

# The "type" names a rule can use in config_validation.yaml
_RULE_TYPES = {
    "number": _Bounded,
    "int": _Count,
    "str": _Text,
    "list": _Sequence,
    "bool": _Flag,
    "enum": _Choice,
}

## Implementation ##############################################################


def _collect_rules(
    section: aconfig.Config,
    prefix: str = "",
) -> List[Tuple[str, _Rule]]:
    """Walk the validation file depth first and build a rule for every leaf"""
    rules = []
    for key, val in section.items():
        if not isinstance(val, dict):
            continue
        name = f"{prefix}{constants.NESTED_DICT_DELIM}{key}" if prefix else key
        type_name = val.get("type")
        rule_class = None
        if isinstance(type_name, str):
            rule_class = _RULE_TYPES.get(type_name)
        if rule_class is None:
            rules.extend(_collect_rules(val, name))
            continue
        args: Dict[str, Any] = dict(val)
        args.pop("type")
        rules.append((name, rule_class(**args)))
    return rules
