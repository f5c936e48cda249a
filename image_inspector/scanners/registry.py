"""
Scanner registry.

Names every scan type selectable with --scan-type: the built-in scanners and
the custom scan types read from the custom scan YAML file.
"""

import logging
from typing import Iterable, List, Optional, Tuple

import yaml

from image_inspector.exceptions import ConfigParseFailed, ScannerNotFound
from image_inspector.scanners.clamav import SCANNER_NAME as CLAMAV
from image_inspector.scanners.custom import CustomScanEntry
from image_inspector.scanners.openscap import SCANNER_NAME as OPENSCAP

logger = logging.getLogger(__name__)

COMMAND_KEYS = ("imagescan", "containerscan", "volumescan")


def _parse_command(path: str, name: str, key: str, value) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [value]
    if not isinstance(value, list) or not all(isinstance(arg, (str, int, float)) for arg in value):
        raise ConfigParseFailed(f"Failed to parse scan option file {path}: {name}.{key} must be a list of strings")
    return [str(arg) for arg in value]


def parse_custom_scans(content: str, path: str = "<string>") -> List[CustomScanEntry]:
    """
    Parse custom scan type definitions.

    The document is a list of mappings with a ``name`` and one command list
    per scan mode (``imagescan``, ``containerscan``, ``volumescan``).

    Raises:
        ConfigParseFailed: If the document is malformed
    """
    try:
        data = yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise ConfigParseFailed(f"Failed to parse scan option file {path}: {e}") from e

    if data is None:
        return []
    if not isinstance(data, list):
        raise ConfigParseFailed(f"Failed to parse scan option file {path}: expected a list of scan types")

    entries = []
    for item in data:
        if not isinstance(item, dict) or not item.get("name"):
            raise ConfigParseFailed(f"Failed to parse scan option file {path}: every scan type needs a name")
        name = str(item["name"])
        entries.append(CustomScanEntry(
            name=name,
            **{key: _parse_command(path, name, key, item.get(key)) for key in COMMAND_KEYS},
        ))
    return entries


def load_custom_scans(path: str) -> List[CustomScanEntry]:
    """Read custom scan type definitions from a YAML file."""
    try:
        with open(path) as f:
            content = f.read()
    except OSError as e:
        raise ConfigParseFailed(f"Unable to read scan option file {path}: {e}") from e

    return parse_custom_scans(content, path)


class ScannerRegistry:
    """
    Immutable set of available scan types.

    Built-in scanners come first (openscap, plus clamav when a clamd socket
    is configured), followed by custom scan types in file order.
    """

    def __init__(self, custom_entries: Iterable[CustomScanEntry] = (), clam_socket: str = ""):
        builtins = [OPENSCAP]
        if clam_socket:
            builtins.append(CLAMAV)
        self._builtins: Tuple[str, ...] = tuple(builtins)

        custom = {}
        for entry in custom_entries:
            if entry.name in self._builtins or entry.name in custom:
                raise ConfigParseFailed(f"Custom scan option {entry.name} already specified")
            custom[entry.name] = entry
        self._custom = custom

    @classmethod
    def from_config(cls, custom_scan_conf: Optional[str] = None, clam_socket: str = "") -> "ScannerRegistry":
        """Build the registry from the custom scan file (if any)."""
        entries = load_custom_scans(custom_scan_conf) if custom_scan_conf else []
        registry = cls(entries, clam_socket=clam_socket)
        logger.debug(f"Available scan types: {', '.join(registry.names())}")
        return registry

    def names(self) -> List[str]:
        return [*self._builtins, *self._custom]

    def has(self, name: str) -> bool:
        return name in self._builtins or name in self._custom

    def is_builtin(self, name: str) -> bool:
        return name in self._builtins

    def custom_entry(self, name: str) -> CustomScanEntry:
        try:
            return self._custom[name]
        except KeyError:
            raise ScannerNotFound(f'Scanner "{name}" not found') from None
