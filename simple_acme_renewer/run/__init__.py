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
"""Run loop over every configured certificate and the post-issuance commands."""
import dataclasses
import logging
import os
import subprocess

from .. import errors

logger = logging.getLogger(__name__)


@dataclasses.dataclass
class RunResult:
    """The outcome of processing every configured certificate."""
    issued: list = dataclasses.field(default_factory=list)
    skipped: list = dataclasses.field(default_factory=list)
    failed: dict = dataclasses.field(default_factory=dict)


def run_certificates(manager, certificates, force: bool = False) -> RunResult:
    """
    Processes every certificate request in turn. A failing request is logged and recorded without preventing the
    following ones from being attempted. Once the run is cancelled or out of time, every remaining request is
    recorded as failed without being started.

    Args:
        manager (simple_acme_renewer.CertificateManager): The manager issuing the certificates.
        certificates (list): The name lists to process, the first name of each being its common name.
        force (bool): Request new certificates regardless of the stored ones.

    Returns:
        RunResult: The issued and skipped name lists, and the failures keyed by common name.
    """
    result = RunResult()

    for names in certificates:
        if not names:
            continue
        names = list(names)

        try:
            manager.deadline.check("certificate requests")
            if manager.get_certificate(names, force=force):
                result.issued.append(names)
            else:
                result.skipped.append(names)
        except errors.ACMERenewerError as exc:
            logger.error("[%s] %s", names[0], exc.message)
            result.failed[names[0]] = exc
        except Exception as exc:  # pylint: disable=broad-except
            logger.exception("[%s] %s", names[0], exc)
            result.failed[names[0]] = exc

    return result


def run_command(command, environ: dict) -> None:
    """
    Runs a post-issuance command with extra environment variables.

    Raises:
        simple_acme_renewer.errors.CommandError: When the command cannot be started or exits with an error.
    """
    try:
        subprocess.run(list(command), env=dict(os.environ, **environ), check=True)
    except (OSError, subprocess.CalledProcessError) as exc:
        raise errors.CommandError(f"update command {list(command)} failed: {exc}") from exc


def run_update_commands(settings, certificate_store, issued: list) -> None:
    """
    Runs the post-issuance commands. `update_command_once` runs a single time when any certificate was issued and
    takes precedence over `update_command`, which runs once per issued certificate.

    Args:
        settings (simple_acme_renewer.settings.Settings): The run settings.
        certificate_store (simple_acme_renewer.store.CertificateStore): The store the certificates were written to.
        issued (list): The name lists of the certificates issued by this run.

    Raises:
        simple_acme_renewer.errors.CommandError: When a command fails. Remaining commands are not run.
    """
    if settings.update_command_once:
        if issued:
            logger.info("running update command %s ...", list(settings.update_command_once))
            run_command(settings.update_command_once, {
                "ACME_DNS_COMMON_NAMES": " ".join(names[0] for names in issued),
            })
        return

    for names in issued if settings.update_command else []:
        common_name = names[0]
        logger.info("[%s] running update command %s ...", common_name, list(settings.update_command))
        run_command(settings.update_command, {
            "ACME_DNS_COMMON_NAME": common_name,
            "ACME_DNS_NAMES": " ".join(names),
            "ACME_DNS_CERTIFICATE_DIR": str(certificate_store.certificate_dir(common_name)),
            "ACME_DNS_FULLCHAIN": str(certificate_store.fullchain_path(common_name)),
            "ACME_DNS_PRIVKEY": str(certificate_store.privkey_path(common_name)),
        })
