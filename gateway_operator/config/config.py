"""
Loads the operator tunables once at import time, rejects invalid values and
sets up logging for the whole process
"""

# Standard
import os

# First Party
import aconfig
import alog

# Local
from .validation import get_invalid_params

_CONFIG_DIR = os.path.dirname(__file__)


def _load(filename: str, override_env_vars: bool) -> aconfig.Config:
    return aconfig.Config.from_yaml(
        os.path.join(_CONFIG_DIR, filename),
        override_env_vars=override_env_vars,
    )


# Any tunable can be overridden with an upper case env var of the same name,
# e.g. MAX_CONCURRENT_RECONCILES=4
library_config = _load("config.yaml", override_env_vars=True)

# The rules are part of the package and never come from the environment
validation_config = _load("config_validation.yaml", override_env_vars=False)

invalid_params = get_invalid_params(library_config, validation_config)
assert not invalid_params, f"Invalid operator configuration: {invalid_params}"

alog.configure(
    default_level=library_config.log_level,
    filters=library_config.log_filters,
    formatter="json" if library_config.log_json else "pretty",
    thread_id=library_config.log_thread_id,
)
