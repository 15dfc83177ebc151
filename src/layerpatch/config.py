"""
Loading and saving the layerpatch YAML configuration.

The document holds a few run settings and the ordered component list. The
older layout with a single `game` record and a `mods` list is still accepted
when loading; saving always writes the `components` layout.
"""

import logging
import os
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from layerpatch.constants import (
    COMPONENT_KEYS,
    CONFIG_COMPONENTS_KEY,
    DEFAULT_REQUEST_TIMEOUT,
    KEY_INSTALL_MARKER,
    KEY_INSTALL_URL,
    KEY_LOG_LEVEL,
    KEY_NAME,
    KEY_PASSWORD,
    KEY_PATCH_URL,
    KEY_REQUEST_TIMEOUT,
    KEY_VERSION,
    KEY_VERSION_URL,
    LEGACY_GAME_KEY,
    LEGACY_INSTALL_MARKER,
    LEGACY_KEY_INSTALL_URL,
    LEGACY_MODS_KEY,
)
from layerpatch.exceptions import ConfigFileError, ConfigValidationError
from layerpatch.log_utils import logger
from layerpatch.patch.interfaces import Component, Pathish

_SETTINGS_KEYS = (
    KEY_INSTALL_MARKER,
    KEY_LOG_LEVEL,
    KEY_REQUEST_TIMEOUT,
    CONFIG_COMPONENTS_KEY,
    LEGACY_GAME_KEY,
    LEGACY_MODS_KEY,
)

# Values kept exactly as written, whatever type YAML would resolve them to
_TEXT_KEYS = frozenset(COMPONENT_KEYS + (LEGACY_KEY_INSTALL_URL, KEY_INSTALL_MARKER))
_YAML_NULL_TAG = "tag:yaml.org,2002:null"


class _ConfigLoader(yaml.SafeLoader):
    """
    SafeLoader that keeps version, password and URL fields as literal text.

    YAML 1.1 resolves unquoted scalars such as 1.10 or 0123 to numbers, which
    would turn a hand-written version into "1.1" and a password into "83".
    """

    def construct_mapping(self, node, deep=False):
        mapping = super().construct_mapping(node, deep=deep)
        for key_node, value_node in node.value:
            if (
                isinstance(key_node, yaml.ScalarNode)
                and key_node.value in _TEXT_KEYS
                and isinstance(value_node, yaml.ScalarNode)
                and value_node.tag != _YAML_NULL_TAG
            ):
                mapping[key_node.value] = value_node.value
        return mapping


@dataclass
class PatcherConfig:
    """Settings and the ordered component list of one installation."""

    components: List[Component] = field(default_factory=list)
    install_marker: Optional[str] = None
    """Relative path whose absence triggers the full install bootstrap"""

    log_level: Optional[str] = None
    request_timeout: float = DEFAULT_REQUEST_TIMEOUT


def _optional_str(value: Any, where: str, key: str) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, (str, int, float)):
        raise ConfigValidationError(
            f"Invalid value for '{key}' in {where}", details="expected a string"
        )
    # Documents built in code may carry numbers for text fields
    return str(value)


def _required_str(value: Any, where: str, key: str) -> str:
    text = _optional_str(value, where, key)
    if not text:
        raise ConfigValidationError(f"Missing required key '{key}' in {where}")
    return text


def _parse_component(raw: Any, where: str, legacy: bool = False) -> Component:
    if not isinstance(raw, dict):
        raise ConfigValidationError(f"{where} must be a mapping")

    install_key = LEGACY_KEY_INSTALL_URL if legacy else KEY_INSTALL_URL
    known = set(COMPONENT_KEYS) | {install_key}
    for key in raw:
        if key not in known:
            logger.warning(f"Ignoring unknown key '{key}' in {where}")

    version_url = _optional_str(raw.get(KEY_VERSION_URL), where, KEY_VERSION_URL) or None
    return Component(
        name=_required_str(raw.get(KEY_NAME), where, KEY_NAME),
        patch_url=_required_str(raw.get(KEY_PATCH_URL), where, KEY_PATCH_URL),
        version_url=version_url,
        version=_optional_str(raw.get(KEY_VERSION), where, KEY_VERSION) or None,
        password=_optional_str(raw.get(KEY_PASSWORD), where, KEY_PASSWORD),
        install_url=_optional_str(raw.get(install_key), where, install_key) or None,
    )


def _parse_components(document: Dict[str, Any]) -> List[Component]:
    has_components = CONFIG_COMPONENTS_KEY in document
    has_legacy = LEGACY_GAME_KEY in document or LEGACY_MODS_KEY in document
    if has_components and has_legacy:
        raise ConfigValidationError(
            f"Use either '{CONFIG_COMPONENTS_KEY}' or '{LEGACY_GAME_KEY}'/'{LEGACY_MODS_KEY}', not both"
        )

    if has_components:
        raw_components = document[CONFIG_COMPONENTS_KEY] or []
        if not isinstance(raw_components, list):
            raise ConfigValidationError(f"'{CONFIG_COMPONENTS_KEY}' must be a list")
        return [
            _parse_component(raw, f"component #{index + 1}")
            for index, raw in enumerate(raw_components)
        ]

    components = []
    if document.get(LEGACY_GAME_KEY) is not None:
        components.append(
            _parse_component(document[LEGACY_GAME_KEY], f"'{LEGACY_GAME_KEY}'", legacy=True)
        )
    raw_mods = document.get(LEGACY_MODS_KEY) or []
    if not isinstance(raw_mods, list):
        raise ConfigValidationError(f"'{LEGACY_MODS_KEY}' must be a list")
    for index, raw in enumerate(raw_mods):
        components.append(_parse_component(raw, f"mod #{index + 1}", legacy=True))
    return components


def parse_config(document: Any) -> PatcherConfig:
    """
    Validate a parsed YAML document and build a PatcherConfig.

    Raises:
        ConfigValidationError: If the document does not have the expected shape.
    """
    if not isinstance(document, dict):
        raise ConfigValidationError("Configuration must be a mapping")

    for key in document:
        if key not in _SETTINGS_KEYS:
            logger.warning(f"Ignoring unknown configuration key '{key}'")

    components = _parse_components(document)

    install_marker = _optional_str(
        document.get(KEY_INSTALL_MARKER), "configuration", KEY_INSTALL_MARKER
    )
    if install_marker is None and LEGACY_GAME_KEY in document:
        # The legacy layout always bootstrapped when the game's marker was missing
        if any(c.install_url for c in components):
            install_marker = LEGACY_INSTALL_MARKER

    log_level = _optional_str(document.get(KEY_LOG_LEVEL), "configuration", KEY_LOG_LEVEL)
    if log_level is not None and not isinstance(
        logging.getLevelName(log_level.upper()), int
    ):
        raise ConfigValidationError(
            f"Invalid value for '{KEY_LOG_LEVEL}'", details=f"unknown level {log_level!r}"
        )

    timeout = document.get(KEY_REQUEST_TIMEOUT, DEFAULT_REQUEST_TIMEOUT)
    if isinstance(timeout, bool) or not isinstance(timeout, (int, float)) or timeout <= 0:
        raise ConfigValidationError(
            f"Invalid value for '{KEY_REQUEST_TIMEOUT}'",
            details="expected a positive number of seconds",
        )

    return PatcherConfig(
        components=components,
        install_marker=install_marker,
        log_level=log_level,
        request_timeout=timeout,
    )


def load_config(path: Pathish) -> PatcherConfig:
    """
    Load and validate the configuration file at path.

    Raises:
        ConfigFileError: The file is missing, unreadable or not valid YAML.
        ConfigValidationError: The document has the wrong shape.
    """
    path = Path(path)
    try:
        with open(path, "r", encoding="utf-8") as f:
            document = yaml.load(f, Loader=_ConfigLoader)
    except FileNotFoundError as e:
        raise ConfigFileError(
            f"Configuration file {path} not found", path=str(path)
        ) from e
    except OSError as e:
        raise ConfigFileError(
            f"Could not read configuration file {path}", path=str(path), details=str(e)
        ) from e
    except yaml.YAMLError as e:
        raise ConfigFileError(
            f"Could not parse configuration file {path}", path=str(path), details=str(e)
        ) from e

    if document is None:
        raise ConfigValidationError(f"Configuration file {path} is empty")

    config = parse_config(document)
    logger.debug(f"Loaded {len(config.components)} component(s) from {path}")
    return config


def _component_to_dict(component: Component) -> Dict[str, Any]:
    record: Dict[str, Any] = {
        KEY_NAME: component.name,
        KEY_PATCH_URL: component.patch_url,
        KEY_INSTALL_URL: component.install_url,
        KEY_VERSION_URL: component.version_url,
        KEY_VERSION: component.version,
        KEY_PASSWORD: component.password,
    }
    return {key: value for key, value in record.items() if value is not None}


def config_to_document(config: PatcherConfig) -> Dict[str, Any]:
    """Build the YAML document for config in the `components` layout."""
    document: Dict[str, Any] = {}
    if config.install_marker is not None:
        document[KEY_INSTALL_MARKER] = config.install_marker
    if config.log_level is not None:
        document[KEY_LOG_LEVEL] = config.log_level
    if config.request_timeout != DEFAULT_REQUEST_TIMEOUT:
        document[KEY_REQUEST_TIMEOUT] = config.request_timeout
    document[CONFIG_COMPONENTS_KEY] = [_component_to_dict(c) for c in config.components]
    return document


def save_config(path: Pathish, config: PatcherConfig) -> None:
    """
    Write config to path atomically.

    The document is written to a temporary file in the same directory and
    moved over the target, so an interrupted write never leaves a truncated
    configuration behind.

    Raises:
        ConfigFileError: If the file could not be written.
    """
    path = Path(path)
    document = config_to_document(config)
    try:
        temp_fd, temp_path = tempfile.mkstemp(
            dir=str(path.parent), prefix="tmp-", suffix=".yaml"
        )
    except OSError as e:
        raise ConfigFileError(
            f"Could not create temporary file for {path}", path=str(path), details=str(e)
        ) from e

    try:
        with os.fdopen(temp_fd, "w", encoding="utf-8") as temp_f:
            yaml.safe_dump(document, temp_f, sort_keys=False, allow_unicode=True)
        os.replace(temp_path, path)
    except (OSError, yaml.YAMLError) as e:
        raise ConfigFileError(
            f"Could not write configuration file {path}", path=str(path), details=str(e)
        ) from e
    finally:
        if os.path.exists(temp_path):
            try:
                os.remove(temp_path)
            except OSError as e:
                logger.debug(f"Could not remove temporary file {temp_path}: {e}")

    logger.debug(f"Saved configuration to {path}")
