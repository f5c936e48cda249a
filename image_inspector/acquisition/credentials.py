"""
Registry credential resolution.

Builds the ordered list of authentication candidates tried when pulling an
image: an anonymous candidate first, then entries from docker configuration
files or a single explicit username/password pair.
"""

import base64
import binascii
import json
import logging
from typing import Dict, Iterator, List, Optional, Tuple

from image_inspector.exceptions import ConfigParseFailed, CredentialError

logger = logging.getLogger(__name__)

DEFAULT_AUTH_NAME = "Default Empty Authentication"


class CredentialSet:
    """Ordered, named collection of registry authentication candidates."""

    def __init__(self):
        self.configs: Dict[str, Dict[str, str]] = {DEFAULT_AUTH_NAME: {}}

    def add(self, name: str, auth: Dict[str, str]):
        self.configs[name] = auth

    def reset_to(self, name: str, auth: Dict[str, str]):
        """Drop every candidate except the anonymous one and add a single entry."""
        self.configs = {DEFAULT_AUTH_NAME: {}, name: auth}

    def __iter__(self) -> Iterator[Tuple[str, Dict[str, str]]]:
        return iter(list(self.configs.items()))

    def __len__(self) -> int:
        return len(self.configs)

    def names(self) -> List[str]:
        return list(self.configs)


def parse_docker_config(content: str) -> Dict[str, Dict[str, str]]:
    """
    Parse a docker configuration file into registry auth entries.

    Both the ``config.json`` format (entries under ``auths``) and the legacy
    flat ``.dockercfg`` format are accepted.

    Args:
        content: Raw file content

    Returns:
        Mapping of registry name to auth configuration

    Raises:
        ConfigParseFailed: If the content is not a valid docker configuration
    """
    try:
        data = json.loads(content)
    except json.JSONDecodeError as e:
        raise ConfigParseFailed(f"Unable to parse docker config file: {e}") from e

    if not isinstance(data, dict):
        raise ConfigParseFailed("Unable to parse docker config file: expected a JSON object")

    auths = data.get("auths", data)
    if not isinstance(auths, dict):
        raise ConfigParseFailed("Unable to parse docker config file: 'auths' is not an object")

    configs = {}
    for registry, entry in auths.items():
        if not isinstance(entry, dict):
            continue

        username = entry.get("username", "")
        password = entry.get("password", "")
        encoded = entry.get("auth", "")
        if encoded:
            try:
                decoded = base64.b64decode(encoded, validate=True).decode("utf-8")
            except (binascii.Error, UnicodeDecodeError) as e:
                raise ConfigParseFailed(f"Invalid auth entry for {registry}: {e}") from e
            if ":" not in decoded:
                raise ConfigParseFailed(f"Invalid auth entry for {registry}: missing ':' separator")
            username, password = decoded.split(":", 1)

        configs[registry] = {
            "username": username,
            "password": password,
            "email": entry.get("email", ""),
            "serveraddress": registry,
        }

    return configs


def append_docker_config(path: str, credentials: CredentialSet):
    """
    Add the entries of one docker configuration file to the candidates.

    Raises:
        ConfigParseFailed: If the file is unreadable, invalid or empty
    """
    try:
        with open(path) as f:
            content = f.read()
    except OSError as e:
        raise ConfigParseFailed(f"Unable to open docker config file: {e}") from e

    configs = parse_docker_config(content)
    if not configs:
        raise ConfigParseFailed("No auths were found in the given dockercfg file")

    for registry, auth in configs.items():
        credentials.add(f"{path}/{registry}", auth)


def resolve_credentials(
    dockercfg_files: Optional[List[str]] = None,
    username: Optional[str] = None,
    password_file: Optional[str] = None,
) -> CredentialSet:
    """
    Build the ordered authentication candidates for an image pull.

    Args:
        dockercfg_files: Docker configuration files to read entries from
        username: Registry username (overrides configuration files)
        password_file: File whose exact content is the password

    Returns:
        CredentialSet whose first candidate is always anonymous

    Raises:
        CredentialError: If the password file cannot be read
    """
    credentials = CredentialSet()

    for path in dockercfg_files or []:
        try:
            append_docker_config(path, credentials)
        except ConfigParseFailed as e:
            logger.warning(f"Unable to read docker configuration from {path}. Error: {e}")

    if username:
        try:
            with open(password_file, "rb") as f:
                token = f.read()
        except (OSError, TypeError) as e:
            raise CredentialError(f"Unable to read password file: {e}") from e

        credentials.reset_to(
            username,
            {"username": username, "password": token.decode("utf-8", errors="surrogateescape")},
        )

    return credentials
