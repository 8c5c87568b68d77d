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
"""Command line entry point: `simple-acme-renewer` or `python -m simple_acme_renewer`."""
import argparse
import dataclasses
import logging
import os
import signal
import sys

from acme import errors as acme_errors
from acme import messages
import requests

from . import CertificateManager
from . import errors
from . import lock
from . import providers
from . import run
from . import tools
from .settings import Settings

logger = logging.getLogger("simple_acme_renewer")

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_CONFIG = 2


def parse_args(argv: list = None) -> argparse.Namespace:
    """Parses the command line. Options override the matching `ACME_DNS_*` environment variables."""
    parser = argparse.ArgumentParser(
        prog="simple-acme-renewer",
        description="Issue and renew certificates from an ACME CA using DNS-01 challenges."
    )
    parser.add_argument("--force", action="store_true", help="request new certificates even if still valid")
    parser.add_argument("--debug", action="store_true", help="enable debug logging")
    return parser.parse_args(argv)


def install_signal_handlers(deadline: tools.Deadline) -> dict:
    """
    Cancels the deadline on SIGINT/SIGTERM so every wait returns promptly and cleanup still runs.

    Returns:
        dict: The previous handlers, keyed by signal number.
    """
    def handler(signum, _frame):
        logger.warning("received signal %s, cancelling ...", signal.Signals(signum).name)
        deadline.cancel()

    return {signum: signal.signal(signum, handler) for signum in (signal.SIGINT, signal.SIGTERM)}


def main(argv: list = None, environ: dict = None) -> int:
    """
    Runs one renewal pass over every configured certificate.

    Returns:
        int: `0` when every certificate was skipped or issued (or none are configured), `1` when a certificate or a
            post-issuance command failed, `2` on a configuration error or when another run holds the lock.
    """
    args = parse_args(argv)
    environ = os.environ if environ is None else environ

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    try:
        settings = Settings.from_environ(environ)
    except errors.ConfigError as exc:
        logger.error(exc.message)
        return EXIT_CONFIG

    if args.force:
        settings = dataclasses.replace(settings, force=True)
    if args.debug:
        settings = dataclasses.replace(settings, log_level="DEBUG")
    logging.getLogger().setLevel(settings.log_level)

    if not settings.certificates:
        logger.info("no certificates defined. exiting ...")
        return EXIT_OK

    deadline = tools.Deadline(settings.timeout.total_seconds())
    previous_handlers = install_signal_handlers(deadline)

    try:
        with lock.Lock(os.path.join(settings.data_dir, "locks", "lock")):
            return renew(settings, deadline)
    except (errors.ConfigError, errors.AlreadyLocked) as exc:
        logger.error(exc.message)
        return EXIT_CONFIG
    except errors.ACMERenewerError as exc:
        logger.error(exc.message)
        return EXIT_FAILED
    except (acme_errors.Error, messages.Error, requests.exceptions.RequestException) as exc:
        logger.error("ACME account setup failed: %s", exc)
        return EXIT_FAILED
    finally:
        for signum, previous in previous_handlers.items():
            signal.signal(signum, previous)


def renew(settings: Settings, deadline: tools.Deadline) -> int:
    """Issues what needs issuing and runs the post-issuance commands. Called with the lock held."""
    provider = providers.get_provider(settings)
    manager = CertificateManager.from_settings(settings, provider, deadline)

    result = run.run_certificates(manager, settings.certificates, force=settings.force)
    logger.info(
        "done: %d issued, %d skipped, %d failed", len(result.issued), len(result.skipped), len(result.failed)
    )

    try:
        run.run_update_commands(settings, manager.store, result.issued)
    except errors.CommandError as exc:
        logger.error(exc.message)
        return EXIT_FAILED

    return EXIT_FAILED if result.failed else EXIT_OK


def entrypoint() -> None:
    """Console script entry point."""
    sys.exit(main())


if __name__ == "__main__":
    entrypoint()
