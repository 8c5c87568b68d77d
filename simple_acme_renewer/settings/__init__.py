# Copyright 2023 Jared Hendrickson
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#    http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.
"""Run settings read from the environment and the certificate request files."""
import dataclasses
import datetime
import logging
import os
import pathlib
import shlex

import validators

from .. import errors

logger = logging.getLogger(__name__)

ENV_PREFIX = "ACME_DNS_"
KEY_TYPES = ("ec256", "ec384", "rsa2048", "rsa4096")
TRUE_VALUES = ("1", "true", "yes", "on")
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")
STAGING_DIRECTORY = "https://acme-staging-v02.api.letsencrypt.org/directory"
PRODUCTION_DIRECTORY = "https://acme-v02.api.letsencrypt.org/directory"


@dataclasses.dataclass(frozen=True)
class Settings:
    """Immutable settings of one run, passed explicitly to every component that needs them."""
    # pylint: disable=too-many-instance-attributes
    data_dir: str
    certificates: tuple = ()
    production: bool = False
    force: bool = False
    timeout: datetime.timedelta = datetime.timedelta(minutes=15)
    email: str = None
    key_type: str = "ec384"
    update_command: tuple = ()
    update_command_once: tuple = ()
    cloudns_auth_id: str = None
    cloudns_sub_auth_id: str = None
    cloudns_auth_password: str = None
    hetzner_api_key: str = None
    log_level: str = "INFO"

    @property
    def directory(self) -> str:
        """The ACME directory URL of the selected environment."""
        return PRODUCTION_DIRECTORY if self.production else STAGING_DIRECTORY

    @classmethod
    def from_environ(cls, environ: dict = None) -> "Settings":
        """
        Reads the settings from `ACME_DNS_*` environment variables and the request files of the config directory.

        Args:
            environ (dict): The environment to read, defaults to `os.environ`.

        Raises:
            simple_acme_renewer.errors.ConfigError: When a setting is missing or invalid.
        """
        environ = os.environ if environ is None else environ

        data_dir = os.path.abspath(get_string(environ, "DATA_DIR", "/var/lib/acme-dns", required=True))
        config_dir = os.path.abspath(get_string(environ, "CONFIG_DIR", "/etc/acme-dns.d", required=True))

        email = get_string(environ, "EMAIL") or None
        if email and not validators.email(email):
            raise errors.InvalidEmail(f"settings: {ENV_PREFIX}EMAIL '{email}' is not a valid email address")

        key_type = get_string(environ, "KEY_TYPE", "ec384").lower()
        if key_type not in KEY_TYPES:
            raise errors.InvalidKeyType(
                f"settings: invalid {ENV_PREFIX}KEY_TYPE '{key_type}'. Options {list(KEY_TYPES)}"
            )

        cloudns_auth_id = get_string(environ, "CLOUDNS_AUTH_ID") or None
        cloudns_sub_auth_id = get_string(environ, "CLOUDNS_SUB_AUTH_ID") or None
        cloudns_auth_password = get_string(environ, "CLOUDNS_AUTH_PASSWORD") or None
        if (cloudns_auth_id or cloudns_sub_auth_id) and not cloudns_auth_password:
            raise errors.ConfigError(f"settings: {ENV_PREFIX}CLOUDNS_AUTH_PASSWORD missing")
        if cloudns_auth_password and not (cloudns_auth_id or cloudns_sub_auth_id):
            raise errors.ConfigError(f"settings: {ENV_PREFIX}CLOUDNS_AUTH_ID missing")

        hetzner_api_key = get_string(environ, "HETZNER_API_KEY") or None
        if not cloudns_auth_password and not hetzner_api_key:
            raise errors.ConfigError("settings: a DNS provider must be configured")

        log_level = get_string(environ, "LOG_LEVEL", "INFO").upper()
        if log_level not in LOG_LEVELS:
            raise errors.ConfigError(
                f"settings: invalid {ENV_PREFIX}LOG_LEVEL '{log_level}'. Options {list(LOG_LEVELS)}"
            )

        settings = cls(
            data_dir=data_dir,
            certificates=read_certificates(config_dir),
            production=get_bool(environ, "PRODUCTION"),
            force=get_bool(environ, "FORCE"),
            timeout=datetime.timedelta(minutes=get_positive_int(environ, "TIMEOUT_MINUTES", 15)),
            email=email,
            key_type=key_type,
            update_command=get_command(environ, "UPDATE_COMMAND"),
            update_command_once=get_command(environ, "UPDATE_COMMAND_ONCE"),
            cloudns_auth_id=cloudns_auth_id,
            cloudns_sub_auth_id=cloudns_sub_auth_id,
            cloudns_auth_password=cloudns_auth_password,
            hetzner_api_key=hetzner_api_key,
            log_level=log_level
        )

        if not settings.production:
            logger.warning(
                "using staging endpoint for Let's Encrypt. please export %sPRODUCTION=true to use production endpoint "
                "when ready for it.", ENV_PREFIX
            )

        return settings


def get_string(environ: dict, key: str, default: str = "", required: bool = False) -> str:
    """
    Reads a string setting. A required setting must not be set to an empty value, and must either be set or have a
    default.
    """
    name = ENV_PREFIX + key
    if name in environ:
        value = environ[name].strip()
        if required and not value:
            raise errors.ConfigError(f"settings: {name} empty")
        return value
    if required and not default:
        raise errors.ConfigError(f"settings: {name} missing")
    return default


def get_bool(environ: dict, key: str) -> bool:
    """Reads a boolean setting. Only `1`, `true`, `yes` and `on` (any case) are true."""
    return get_string(environ, key).lower() in TRUE_VALUES


def get_positive_int(environ: dict, key: str, default: int) -> int:
    """Reads a strictly positive integer setting."""
    value = get_string(environ, key, str(default))
    try:
        number = int(value)
    except ValueError as exc:
        raise errors.ConfigError(f"settings: {ENV_PREFIX}{key} must be an integer, got '{value}'") from exc
    if number <= 0:
        raise errors.ConfigError(f"settings: {ENV_PREFIX}{key} must be a positive integer, got '{value}'")
    return number


def get_command(environ: dict, key: str) -> tuple:
    """Reads a command line setting and splits it with shell quoting rules."""
    value = get_string(environ, key)
    try:
        return tuple(shlex.split(value))
    except ValueError as exc:
        raise errors.ConfigError(f"settings: invalid {ENV_PREFIX}{key}: {exc}") from exc


def strip_wildcard(domain: str) -> str:
    """Strips the wildcard portion of a domain (*.) if present."""
    return domain[2:] if domain.startswith("*.") else domain


def parse_certificate_line(line: str) -> list:
    """
    Parses one line of a request file into its list of names. Empty lines and `#` comments yield an empty list.

    Raises:
        simple_acme_renewer.errors.ConfigError: When the common name is a wildcard or a name is invalid.
    """
    line = line.strip()
    if not line or line.startswith("#"):
        return []

    names = line.split()
    if names[0].startswith("*."):
        raise errors.ConfigError(
            f"settings: common name (first name in a certificate) must not be wildcard: {names[0]}"
        )
    for name in names:
        if not validators.domain(strip_wildcard(name)):
            raise errors.InvalidDomain(f"settings: invalid domain name '{name}'. Domain name must adhere to RFC2181.")

    return names


def read_certificates(config_dir: str) -> tuple:
    """
    Reads every certificate request from the config directory. Each non-hidden regular file holds one request per
    line; files are read in name order.

    Returns:
        tuple: A tuple of name lists, the first name of each list being its common name. Empty when nothing is
            configured.

    Raises:
        simple_acme_renewer.errors.ConfigError: When the directory cannot be read, a line is invalid or a common
            name appears in two requests.
    """
    path = pathlib.Path(config_dir)
    try:
        files = sorted(entry for entry in path.iterdir() if entry.is_file() and not entry.name.startswith("."))
    except OSError as exc:
        raise errors.ConfigError(f"settings: failed to read config directory '{config_dir}': {exc}") from exc

    certificates = []
    common_names = set()
    for file in files:
        try:
            lines = file.read_text(encoding="utf-8").splitlines()
        except (OSError, UnicodeDecodeError) as exc:
            raise errors.ConfigError(f"settings: failed to read '{file}': {exc}") from exc

        for line in lines:
            names = parse_certificate_line(line)
            if not names:
                continue
            if names[0] in common_names:
                raise errors.ConfigError(f"settings: common name found in 2 or more certificates: {names[0]}")
            common_names.add(names[0])
            certificates.append(tuple(names))

    return tuple(certificates)
