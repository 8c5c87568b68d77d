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
simple_acme_renewer issues and renews certificates from an ACME CA using the DNS-01 challenge. The challenge records
are published through a DNS provider API, and the resulting keys and certificate chains are kept on disk with stable
symlinks pointing at the newest pair. It is meant to run periodically (e.g. from a timer), renewing only what needs
to be renewed.
"""
import datetime
import logging
import typing

from acme import challenges
from acme import client
from acme import crypto_util
from acme import errors as acme_errors
from acme import messages
from cryptography.hazmat.primitives.asymmetric import ec, rsa
from cryptography.hazmat.primitives.serialization import Encoding, PrivateFormat, NoEncryption
import josepy as jose

from . import errors
from . import providers
from . import renewal
from . import store
from . import tools

logger = logging.getLogger(__name__)

# Constants and Variables
USER_AGENT = "simple_acme_renewer/1.0"
# Time (in seconds) between two polls of an authorization's status
AUTHORIZATION_POLL_INTERVAL = 2
# Time (in seconds) between two polls of an order being finalized, and the span of each poll
FINALIZATION_POLL_INTERVAL = 1
FINALIZATION_POLL_WINDOW = 1
__pdoc__ = {"tests": False}    # Excludes 'tests' submodule from documentation


def generate_private_key(key_type: str = "ec384") -> bytes:
    """
    Generates a new RSA or EC private key.

    Args:
        key_type (str): The requested key type. Options are: [`ec256`, `ec384`, `rsa2048`, `rsa4096`]

    Returns:
        bytes: The PEM (PKCS#8) encoded private key data bytes-string.

    Raises:
        simple_acme_renewer.errors.InvalidKeyType: When an unknown/unsupported `key_type` is requested.
    """
    if key_type == "ec256":
        key = ec.generate_private_key(ec.SECP256R1())
    elif key_type == "ec384":
        key = ec.generate_private_key(ec.SECP384R1())
    elif key_type == "rsa2048":
        key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    elif key_type == "rsa4096":
        key = rsa.generate_private_key(public_exponent=65537, key_size=4096)
    else:
        options = ["ec256", "ec384", "rsa2048", "rsa4096"]
        raise errors.InvalidKeyType(f"Invalid private key type '{key_type}'. Options {options}")

    return key.private_bytes(encoding=Encoding.PEM, format=PrivateFormat.PKCS8, encryption_algorithm=NoEncryption())


def generate_account_key() -> jose.JWKRSA:
    """Generates a new RSA2048 ACME account key."""
    return jose.JWKRSA(key=rsa.generate_private_key(public_exponent=65537, key_size=2048))


def new_acme_client(directory: str, account_key: jose.JWK, verify_ssl: bool = True) -> client.ClientV2:
    """
    Builds an ACME client for the directory URL, signing requests with `account_key`. No account is bound yet.
    """
    net = client.ClientNetwork(account_key, user_agent=USER_AGENT, verify_ssl=verify_ssl)
    directory_obj = messages.Directory.from_json(net.get(directory).json())
    return client.ClientV2(directory_obj, net=net)


def load_account(settings, certificate_store: store.CertificateStore) -> client.ClientV2:
    """
    Returns an ACME client bound to the account of the selected environment. The account key is loaded from the
    store and the account looked up on the server, or, on first use, a new key is generated, registered (agreeing to
    the CA's terms of service) and only then written to the store.
    """
    account_key = certificate_store.load_account_key()

    if account_key is not None:
        logger.info("loading account: %s", certificate_store.account_key_path())
        acme_client = new_acme_client(settings.directory, account_key)
        acme_client.query_registration(messages.RegistrationResource(body=messages.Registration()))
        return acme_client

    logger.info("registering account: %s", certificate_store.account_key_path())
    account_key = generate_account_key()
    acme_client = new_acme_client(settings.directory, account_key)
    registration = messages.NewRegistration.from_data(email=settings.email, terms_of_service_agreed=True)
    acme_client.new_account(registration)
    certificate_store.save_account_key(account_key)
    return acme_client


class ChallengeRecord(typing.NamedTuple):
    """A challenge record published for one pending authorization."""
    name: str
    zone: str
    host: str
    value: str
    challenge: messages.ChallengeBody
    response: challenges.ChallengeResponse
    authorization: messages.AuthorizationResource


class CertificateManager:
    """
    Drives the ACME order of one certificate at a time: renewal check, order, DNS-01 challenges, finalization and
    storage.
    """

    def __init__(
            self,
            acme_client: client.ClientV2,
            provider: providers.DNSProvider,
            certificate_store: store.CertificateStore,
            deadline: tools.Deadline,
            key_type: str = "ec384"
    ):
        """
        Args:
            acme_client (acme.client.ClientV2): A client bound to a registered account.
            provider (simple_acme_renewer.providers.DNSProvider): The DNS backend publishing challenge records.
            certificate_store (simple_acme_renewer.store.CertificateStore): Where certificates are loaded and stored.
            deadline (simple_acme_renewer.tools.Deadline): The run deadline and cancellation signal.
            key_type (str): The certificate private key type.
        """
        self.acme_client = acme_client
        self.provider = provider
        self.store = certificate_store
        self.deadline = deadline
        self.key_type = key_type

    @classmethod
    def from_settings(cls, settings, provider: providers.DNSProvider, deadline: tools.Deadline) -> "CertificateManager":
        """Builds a manager for the run settings, loading or registering the ACME account."""
        certificate_store = store.CertificateStore(settings.data_dir, settings.production)
        acme_client = load_account(settings, certificate_store)
        return cls(acme_client, provider, certificate_store, deadline, key_type=settings.key_type)

    def get_certificate(self, names: list, force: bool = False) -> bool:
        """
        Issues a new certificate for `names` unless the stored one is still good.

        Args:
            names (list): The DNS names, the first being the common name.
            force (bool): Request a new certificate regardless of the stored one.

        Returns:
            bool: True when a new certificate was issued and stored, False when the stored one was kept.

        Raises:
            simple_acme_renewer.errors.NoDNS01Challenge: When an authorization offers no DNS-01 challenge.
            simple_acme_renewer.errors.AuthorizationFailed: When any authorization fails.
            simple_acme_renewer.errors.ChallengeTimeout: When the run deadline is reached.
            simple_acme_renewer.errors.Cancelled: When the run is cancelled.
        """
        names = list(names)
        if not names:
            raise errors.InvalidDomain("No names provided")
        common_name = names[0]

        logger.info("[%s] starting ...", common_name)

        if force:
            logger.info("[%s] requesting new certificate (forced) ...", common_name)
        elif not self.renewal_needed(common_name, names):
            return False

        private_key = generate_private_key(self.key_type)
        order = self.acme_client.new_order(crypto_util.make_csr(private_key, names))

        records = []
        try:
            self.deploy_challenges(common_name, order, records)

            if records:
                logger.info("[%s] waiting for DNS propagation of challenges ...", common_name)
                for record in records:
                    providers.wait_for_challenge(self.provider, record.zone, record.host, record.value, self.deadline)

                logger.info("[%s] accepting challenges ...", common_name)
                for record in records:
                    self.acme_client.answer_challenge(record.challenge, record.response)

                logger.info("[%s] waiting for authorizations ...", common_name)
                for record in records:
                    self.wait_for_authorization(common_name, record.authorization)

            chain = self.finalize(common_name, order)
            self.store.persist(common_name, datetime.datetime.now(datetime.timezone.utc), private_key, chain)
        finally:
            self.clean_challenges(common_name, records)
            self.cleanup_authorizations(common_name, order)

        logger.info("[%s] certificate request done", common_name)
        return True

    def renewal_needed(self, common_name: str, names: list) -> bool:
        """Applies the renewal policy to the stored certificate, logging the reason of the decision."""
        logger.info("[%s] checking if a new certificate is needed ...", common_name)
        decision = renewal.needs_renewal(self.store.load(common_name), names)

        if not decision.needs_new:
            logger.info("[%s] current certificate expires %s. skipping renew ...", common_name, decision.expiry)
        elif decision.expiry:
            logger.info("[%s] current certificate expires %s. renewing ...", common_name, decision.expiry)
        elif decision.added or decision.removed:
            logger.info(
                "[%s] names changed from current certificate (added %s, removed %s). requesting new ...",
                common_name, list(decision.added), list(decision.removed)
            )
        else:
            logger.info("[%s] could not find a suitable certificate. requesting new ...", common_name)

        return decision.needs_new

    def deploy_challenges(self, common_name: str, order: messages.OrderResource, records: list) -> None:
        """
        Publishes a challenge record for every pending authorization of the order. Each published record is appended
        to `records` as soon as it exists, so the caller can remove it whatever happens next.
        """
        for authorization in order.authorizations:
            name = authorization.body.identifier.value
            if authorization.body.status != messages.STATUS_PENDING:
                logger.info("[%s: %s] authorization is %s, skipping ...", common_name, name, authorization.body.status)
                continue

            challenge = select_dns01(authorization)

            logger.info("[%s: %s] generating challenge record ...", common_name, name)
            response, value = challenge.response_and_validation(self.acme_client.net.key)

            logger.info("[%s: %s] deploying challenge ...", common_name, name)
            zone, host = providers.deploy_challenge(self.provider, name, value)
            records.append(ChallengeRecord(name, zone, host, value, challenge, response, authorization))

    def wait_for_authorization(self, common_name: str, authorization: messages.AuthorizationResource) -> None:
        """
        Polls an authorization until it is valid.

        Raises:
            simple_acme_renewer.errors.AuthorizationFailed: When the authorization reaches any other final state.
        """
        name = authorization.body.identifier.value

        def is_valid() -> bool:
            updated, _ = self.acme_client.poll(authorization)
            status = updated.body.status
            if status == messages.STATUS_VALID:
                return True
            if status in (messages.STATUS_PENDING, messages.STATUS_PROCESSING):
                return False

            problems = [str(challb.error) for challb in updated.body.challenges if challb.error is not None]
            detail = f": {'; '.join(problems)}" if problems else ""
            raise errors.AuthorizationFailed(f"{common_name}: authorization for {name} is {status}{detail}")

        self.deadline.poll_until(is_valid, what=f"authorization of {name}", interval=AUTHORIZATION_POLL_INTERVAL)

    def finalize(self, common_name: str, order: messages.OrderResource) -> bytes:
        """
        Finalizes the order with its CSR and downloads the issued chain. The order is polled through the run
        deadline, so a cancellation interrupts the wait for issuance as well.

        Returns:
            bytes: The PEM encoded full chain, leaf first.

        Raises:
            simple_acme_renewer.errors.Cancelled: When the run was cancelled.
            simple_acme_renewer.errors.ChallengeTimeout: When the certificate is not issued before the deadline.
        """
        self.deadline.check(f"finalization of {common_name}")
        logger.info("[%s] finalizing order ...", common_name)
        order = self.acme_client.begin_finalization(order)
        issued = []

        def is_issued() -> bool:
            window = datetime.datetime.now() + datetime.timedelta(seconds=FINALIZATION_POLL_WINDOW)
            try:
                issued.append(self.acme_client.poll_finalization(order, window))
            except acme_errors.TimeoutError:
                return False
            return True

        self.deadline.poll_until(is_issued, what=f"finalization of {common_name}", interval=FINALIZATION_POLL_INTERVAL)
        return issued[0].fullchain_pem.encode()

    def clean_challenges(self, common_name: str, records: list) -> None:
        """Removes every published challenge record. Failures are logged and never raised."""
        for record in reversed(records):
            logger.info("[%s: %s] cleaning challenge ...", common_name, record.name)
            try:
                providers.clean_challenge(self.provider, record.zone, record.host, record.value)
            except errors.ACMERenewerError as exc:
                logger.error("[%s: %s] %s", common_name, record.name, exc.message)

    def cleanup_authorizations(self, common_name: str, order: messages.OrderResource) -> None:
        """Deactivates every authorization of the order that is still pending. Failures are logged and never raised."""
        for authorization in order.authorizations:
            try:
                updated, _ = self.acme_client.poll(authorization)
                if updated.body.status != messages.STATUS_PENDING:
                    continue
                logger.info(
                    "[%s: %s] revoking authorization: %s", common_name, updated.body.identifier.value, updated.uri
                )
                self.acme_client.deactivate_authorization(updated)
            except Exception as exc:  # pylint: disable=broad-except
                logger.error("[%s] failed to revoke authorization %s: %s", common_name, authorization.uri, exc)


def select_dns01(authorization: messages.AuthorizationResource) -> messages.ChallengeBody:
    """
    Selects the DNS-01 challenge of an authorization.

    Raises:
        simple_acme_renewer.errors.NoDNS01Challenge: When the authorization offers no DNS-01 challenge.
    """
    for challenge in authorization.body.challenges:
        if isinstance(challenge.chall, challenges.DNS01):
            return challenge

    raise errors.NoDNS01Challenge(f"{authorization.body.identifier.value}: no dns-01 challenge found")
