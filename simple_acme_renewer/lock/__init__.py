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
"""Single-instance lock for the data directory."""
import logging
import os
import pathlib
import time

from .. import errors

logger = logging.getLogger(__name__)


class Lock:
    """
    A lock file created exclusively on acquisition and removed on release. It stores the acquisition time so a
    stale lock left behind by a killed run can be identified by an operator.
    """

    def __init__(self, path: str) -> None:
        self.path = pathlib.Path(path)
        self.acquired = False

    def acquire(self) -> "Lock":
        """
        Acquires the lock.

        Raises:
            simple_acme_renewer.errors.AlreadyLocked: When the lock file already exists.
            simple_acme_renewer.errors.PersistenceError: When the lock file cannot be created.
        """
        try:
            self.path.parent.mkdir(mode=0o700, parents=True, exist_ok=True)
            fd = os.open(self.path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
        except FileExistsError as exc:
            raise errors.AlreadyLocked(f"lock exists: {self.path}") from exc
        except OSError as exc:
            raise errors.PersistenceError(f"Failed to create lock '{self.path}': {exc}") from exc

        self.acquired = True
        try:
            with open(fd, "w", encoding="utf-8") as lock_file:
                lock_file.write(f"{int(time.time())}\n")
        except OSError as exc:
            self.release()
            raise errors.PersistenceError(f"Failed to write lock '{self.path}': {exc}") from exc

        logger.debug("acquired lock %s", self.path)
        return self

    def release(self) -> None:
        """Releases the lock. Releasing a lock that is not held does nothing."""
        if not self.acquired:
            return

        self.acquired = False
        try:
            self.path.unlink()
        except FileNotFoundError:
            pass
        logger.debug("released lock %s", self.path)

    def __enter__(self) -> "Lock":
        return self.acquire()

    def __exit__(self, *exc_info) -> None:
        self.release()
