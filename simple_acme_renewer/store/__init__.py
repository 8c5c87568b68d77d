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
"""
On-disk storage for the ACME account key and the issued certificates.

Layout under the data directory::

    account/key[-staging].pem
    certs/<common name>/privkey-<timestamp>[-staging].pem
    certs/<common name>/fullchain-<timestamp>[-staging].pem
    certs/<common name>/privkey[-staging].pem -> privkey-<timestamp>[-staging].pem
    certs/<common name>/fullchain[-staging].pem -> fullchain-<timestamp>[-staging].pem

The stable symlinks are replaced by removing the old link and creating the new one. A reader that looks at the
directory between both steps sees no current certificate; the run lock only protects against concurrent writers.
"""
import datetime
import logging
import os
import pathlib
import re

import josepy as jose
from cryptography.hazmat.primitives.serialization import (
    Encoding, NoEncryption, PrivateFormat, load_pem_private_key
)

from .. import errors

logger = logging.getLogger(__name__)

TIMESTAMP_FORMAT = "%Y%m%d%H%M%S"
PEM_BLOCK = re.compile(rb"-----BEGIN ([A-Z0-9 ]+)-----\r?\n.*?-----END \1-----\r?\n?", re.DOTALL)


def split_pem(data: bytes) -> list:
    """
    Splits PEM data into its individual blocks, keeping each block's armor.

    Returns:
        list: The PEM blocks as bytes-strings, in file order.
    """
    return [match.group(0) for match in PEM_BLOCK.finditer(data)]


def write_exclusive(path: pathlib.Path, data: bytes) -> None:
    """
    Writes `data` to a new file readable only by its owner, creating parent directories as needed.

    Raises:
        simple_acme_renewer.errors.AlreadyExists: When the file already exists.
        simple_acme_renewer.errors.PersistenceError: When the file cannot be written.
    """
    try:
        path.parent.mkdir(mode=0o700, parents=True, exist_ok=True)
        with open(os.open(path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600), "wb") as file:
            file.write(data)
    except FileExistsError as exc:
        raise errors.AlreadyExists(f"Refusing to overwrite existing file '{path}'") from exc
    except OSError as exc:
        raise errors.PersistenceError(f"Failed to write '{path}': {exc}") from exc


class CertificateStore:
    """File-based store for the account key and the certificates issued per common name."""

    def __init__(self, data_dir: str, production: bool = False) -> None:
        """
        Args:
            data_dir (str): The data directory root.
            production (bool): Use the production file names instead of the `-staging` ones.
        """
        self.data_dir = pathlib.Path(data_dir)
        self.production = production

    def filename(self, name: str) -> str:
        """Builds a PEM file name, suffixed with `-staging` outside production."""
        return f"{name}.pem" if self.production else f"{name}-staging.pem"

    def certificate_dir(self, common_name: str) -> pathlib.Path:
        """The directory holding every artifact of one certificate."""
        return self.data_dir / "certs" / common_name

    def privkey_path(self, common_name: str) -> pathlib.Path:
        """The stable private key symlink of a certificate."""
        return self.certificate_dir(common_name) / self.filename("privkey")

    def fullchain_path(self, common_name: str) -> pathlib.Path:
        """The stable full chain symlink of a certificate."""
        return self.certificate_dir(common_name) / self.filename("fullchain")

    def account_key_path(self) -> pathlib.Path:
        """The account key file of the current environment."""
        return self.data_dir / "account" / self.filename("key")

    def load(self, common_name: str):
        """
        Loads the current chain of a certificate.

        Returns:
            list: The chain as PEM blocks, leaf first, or None when no current certificate exists.

        Raises:
            simple_acme_renewer.errors.PersistenceError: When the file exists but cannot be read.
        """
        path = self.fullchain_path(common_name)
        try:
            data = path.read_bytes()
        except FileNotFoundError:
            return None
        except OSError as exc:
            raise errors.PersistenceError(f"Failed to read '{path}': {exc}") from exc

        return split_pem(data)

    def persist(self, common_name: str, timestamp: datetime.datetime, private_key: bytes, chain: bytes) -> tuple:
        """
        Writes a new private key and chain under timestamped names, then points the stable symlinks at them.

        Args:
            common_name (str): The certificate's common name.
            timestamp (datetime.datetime): The issuance time, formatted in UTC at one-second resolution.
            private_key (bytes): The PEM encoded private key.
            chain (bytes): The PEM encoded full chain, leaf first.

        Returns:
            tuple: The `(privkey, fullchain)` paths that were written.

        Raises:
            simple_acme_renewer.errors.AlreadyExists: When an artifact with the same timestamp exists.
            simple_acme_renewer.errors.PersistenceError: When writing fails.
        """
        stamp = timestamp.astimezone(datetime.timezone.utc).strftime(TIMESTAMP_FORMAT)
        directory = self.certificate_dir(common_name)
        key_name = self.filename(f"privkey-{stamp}")
        chain_name = self.filename(f"fullchain-{stamp}")

        write_exclusive(directory / key_name, private_key)
        write_exclusive(directory / chain_name, chain)

        logger.info("[%s] updating symlinks ...", common_name)
        self._relink(self.privkey_path(common_name), key_name)
        self._relink(self.fullchain_path(common_name), chain_name)

        return directory / key_name, directory / chain_name

    @staticmethod
    def _relink(link: pathlib.Path, target: str) -> None:
        """Replaces `link` with a relative symlink to `target`. Not atomic, see the module documentation."""
        try:
            if link.is_symlink() or link.exists():
                link.unlink()
            link.symlink_to(target)
        except OSError as exc:
            raise errors.PersistenceError(f"Failed to update symlink '{link}': {exc}") from exc

    def load_account_key(self):
        """
        Loads the account key of the current environment.

        Returns:
            josepy.JWKRSA: The account key, or None when no key has been created yet.

        Raises:
            simple_acme_renewer.errors.PersistenceError: When the key file cannot be read or parsed.
        """
        path = self.account_key_path()
        try:
            data = path.read_bytes()
        except FileNotFoundError:
            return None
        except OSError as exc:
            raise errors.PersistenceError(f"Failed to read '{path}': {exc}") from exc

        try:
            return jose.JWKRSA(key=load_pem_private_key(data, password=None))
        except (ValueError, TypeError) as exc:
            raise errors.PersistenceError(f"Failed to parse account key '{path}': {exc}") from exc

    def save_account_key(self, account_key) -> None:
        """
        Writes the account key of the current environment. Called once the account has been registered.

        Args:
            account_key (josepy.JWKRSA): The registered account key.
        """
        write_exclusive(self.account_key_path(), account_key.key.private_bytes(
            encoding=Encoding.PEM,
            format=PrivateFormat.TraditionalOpenSSL,
            encryption_algorithm=NoEncryption()
        ))
