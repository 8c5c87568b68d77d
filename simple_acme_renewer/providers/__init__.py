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
"""DNS provider capability used to publish and remove DNS-01 challenge records."""
import abc
import logging

from .. import errors
from .. import tools

logger = logging.getLogger(__name__)

DNS_LABEL = "_acme-challenge"
# Minimum delay (in seconds) between two record deletions against the same backend
DELETE_INTERVAL = 1
# TTL (in seconds) of the challenge records created by every backend
RECORD_TTL = 60


class DNSProvider(abc.ABC):
    """
    Abstract DNS backend. Every backend implements the same three operations against a delegated zone, with `host`
    relative to that zone (e.g. `_acme-challenge.www` in `example.com`).
    """

    @abc.abstractmethod
    def add_txt_record(self, zone: str, host: str, value: str) -> None:
        """
        Creates a TXT record.

        Raises:
            simple_acme_renewer.errors.ProviderError: When the backend rejects the request.
        """

    @abc.abstractmethod
    def remove_txt_record(self, zone: str, host: str, value: str) -> None:
        """
        Deletes every TXT record under `host` whose value is exactly `value`. No matching record is not an error.
        Consecutive deletions are paced by `DELETE_INTERVAL`.

        Raises:
            simple_acme_renewer.errors.ProviderError: When the backend rejects the request.
        """

    def check_txt_record(self, zone: str, host: str, value: str) -> bool:
        """
        Checks whether the record is visible. Backends without a native propagation signal use the authoritative
        nameservers of the zone.
        """
        return tools.check_txt_authoritative(zone, host, value)


def challenge_host(prefix: str) -> str:
    """Builds the challenge record host for a delegation prefix (`_acme-challenge[.prefix]`)."""
    return f"{DNS_LABEL}.{prefix}" if prefix else DNS_LABEL


def challenge_location(name: str) -> tuple:
    """
    Resolves where the challenge record of `name` lives.

    Returns:
        tuple: A `(zone, host)` tuple.
    """
    prefix, zone = tools.split_domain(name)
    return zone, challenge_host(prefix)


def deploy_challenge(provider: DNSProvider, name: str, value: str) -> tuple:
    """
    Publishes the challenge record for `name`.

    Returns:
        tuple: The `(zone, host)` the record was published at.
    """
    zone, host = challenge_location(name)
    provider.add_txt_record(zone, host, value)
    return zone, host


def clean_challenge(provider: DNSProvider, zone: str, host: str, value: str) -> None:
    """Removes a challenge record published by `deploy_challenge()`."""
    provider.remove_txt_record(zone, host, value)


def wait_for_challenge(provider: DNSProvider, zone: str, host: str, value: str, deadline: tools.Deadline,
                       interval: float = tools.POLL_INTERVAL) -> None:
    """
    Polls the provider until a challenge record published by `deploy_challenge()` is visible.

    Raises:
        simple_acme_renewer.errors.ChallengeTimeout: When the deadline is reached first.
        simple_acme_renewer.errors.Cancelled: When the run is cancelled.
    """
    deadline.poll_until(
        lambda: provider.check_txt_record(zone, host, value),
        what=f"DNS propagation of {host}.{zone}",
        interval=interval
    )


def get_provider(settings) -> DNSProvider:
    """
    Builds the DNS provider selected by the settings. Construction validates the credentials against the backend.

    Args:
        settings (simple_acme_renewer.settings.Settings): The run settings.

    Raises:
        simple_acme_renewer.errors.ConfigError: When no backend is configured.
        simple_acme_renewer.errors.ProviderError: When the backend rejects the credentials.
    """
    # pylint: disable=import-outside-toplevel
    from . import cloudns, hetzner

    if settings.cloudns_auth_password:
        logger.info("using ClouDNS provider")
        return cloudns.ClouDNS(
            auth_id=settings.cloudns_auth_id,
            sub_auth_id=settings.cloudns_sub_auth_id,
            auth_password=settings.cloudns_auth_password
        )
    if settings.hetzner_api_key:
        logger.info("using Hetzner DNS provider")
        return hetzner.Hetzner(api_key=settings.hetzner_api_key)

    raise errors.ConfigError("A DNS provider must be configured")
