"""YAML configuration for autograde.

Configs live in a directory of YAML files (``config/`` at the project root, or
``$AUTOGRADE_CONFIG_DIR``). ``default.yaml`` is applied first, ``local.yaml``
last, and any other files in between in alphabetical order. Values are looked
up by dot path, e.g. ``get_config("grading.batch.batch_size", configs)``.
"""

import copy
import logging
import os
from typing import Any, List, Optional

import yaml

LOG = logging.getLogger(__name__)

ConfigType = dict[str, Any]

CONFIG_DIR_ENV = "AUTOGRADE_CONFIG_DIR"
BASE_CONFIG = "default.yaml"
OVERRIDE_CONFIG = "local.yaml"

_MISSING = object()


def merge_configs(base: Any, override: Any) -> Any:
    """Deep-merge ``override`` onto ``base``. Non-dict values replace wholesale."""
    if not (isinstance(base, dict) and isinstance(override, dict)):
        return copy.deepcopy(override)
    merged = copy.deepcopy(base)
    for key, value in override.items():
        merged[key] = merge_configs(base[key], value) if key in base else copy.deepcopy(value)
    return merged


def load_configs(*paths: str) -> ConfigType:
    """Merge YAML files in order, skipping any that do not exist.

    Raises:
        TypeError: If a file's top level is not a mapping
        ValueError: If nothing was loaded
    """
    configs: ConfigType = {}
    for path in paths:
        if not os.path.isfile(path):
            LOG.warning(f"Skipping missing config file {path!r}")
            continue
        LOG.info(f"Loading config from {path}")
        with open(path, "r") as f:
            loaded = yaml.safe_load(f)
        if not isinstance(loaded, dict):
            raise TypeError(f"YAML config file {path} must be a dict")
        configs = merge_configs(configs, loaded)
    if not configs:
        raise ValueError("No configs loaded")
    return configs


def config_dir() -> str:
    override = os.environ.get(CONFIG_DIR_ENV)
    if override:
        return override
    # autograde/libs -> autograde -> project root
    package_dir = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
    return os.path.join(os.path.dirname(package_dir), "config")


def config_files(directory: str) -> List[str]:
    """YAML files in ``directory`` in merge order: default, others A-Z, local."""
    names = sorted(n for n in os.listdir(directory) if n.endswith(('.yaml', '.yml')))
    rank = {BASE_CONFIG: 0, OVERRIDE_CONFIG: 2}
    names.sort(key=lambda n: rank.get(n, 1))
    return [os.path.join(directory, n) for n in names]


def load_all_configs(directory: Optional[str] = None) -> ConfigType:
    """Load every YAML file in the config directory.

    Raises:
        ValueError: If the directory is missing or holds no YAML files
    """
    directory = directory or config_dir()
    if not os.path.isdir(directory):
        raise ValueError(f"Config directory not found: {directory}")
    files = config_files(directory)
    if not files:
        raise ValueError(f"No YAML files found in {directory}")
    return load_configs(*files)


def get_config(key: str, config: Optional[ConfigType] = None, default: Any = _MISSING) -> Any:
    """Look up a dot-separated key such as ``grading.ai.retry.max_attempts``.

    Raises:
        KeyError: If the path does not resolve and no ``default`` was given
    """
    if config is None:
        config = load_all_configs()

    value: Any = config
    walked: List[str] = []
    for part in key.split('.'):
        if not isinstance(value, dict) or part not in value:
            if default is not _MISSING:
                return default
            where = '.'.join(walked) or '<root>'
            raise KeyError(f"Key {key} not found in configuration (stopped at {where})")
        value = value[part]
        walked.append(part)
    return value
