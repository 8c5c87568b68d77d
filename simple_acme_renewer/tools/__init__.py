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
"""DNS tools and the cancellable wait used during ACME verification."""
import datetime
import logging
import threading
import time

import dns.exception
import dns.rdatatype
import dns.resolver

from .. import errors

logger = logging.getLogger(__name__)

# Per-query timeout (in seconds) used when asking a single authoritative nameserver
AUTHORITATIVE_TIMEOUT = 0.5
# Time (in seconds) between two checks of a polling loop
POLL_INTERVAL = 5


class DNSQuery:
    """A basic class to make DNS queries"""

    def __init__(self, domain: str, rtype: str = "A", nameservers: list = None, timeout: float = None) -> None:
        """
        Initializes our DNS query.

        Args:
            domain (str): The fully qualified domain name to query.
            rtype (str): The DNS request type (e.g. `A`, `TXT`, `NS`, etc.).
            nameservers (list): Nameserver addresses to query. The system resolvers are used when empty.
            timeout (float): The total amount of time (in seconds) to wait for an answer.
        """
        self.type = rtype.upper()
        self.domain = domain
        self.nameservers = nameservers if nameservers else []
        self.timeout = timeout
        self.values = []

    def resolve(self) -> list:
        """
        Queries the nameservers with our configured object values. A missing name or a name without records of the
        requested type is not an error, it simply yields no values.

        Returns:
            list: A list of DNS answer values.

        Raises:
            simple_acme_renewer.errors.ResolutionError: When the lookup itself fails (timeout, SERVFAIL, etc.).
        """
        try:
            answers = DNSQuery.__resolve__(self.domain, self.type, self.nameservers, self.timeout)
        except (dns.resolver.NoAnswer, dns.resolver.NXDOMAIN):
            answers = []
        except dns.exception.DNSException as exc:
            raise errors.ResolutionError(f"Failed to resolve {self.type} record for '{self.domain}': {exc}") from exc

        self.values = self.__parse_values__(answers)
        return self.values

    @staticmethod
    def __resolve__(domain: str, rtype: str, nameservers: list, timeout: float):
        """
        Internal function-like DNS request method.

        Returns:
             dns.resolver.Answer: The answer set from the request.
        """
        resolver = dns.resolver.Resolver()
        resolver.nameservers = nameservers if nameservers else resolver.nameservers
        if timeout:
            resolver.timeout = timeout
            resolver.lifetime = timeout

        return resolver.resolve(domain, rtype)

    @staticmethod
    def __parse_values__(answers) -> list:
        """
        Parses the value portion of each answer into its own list.

        Args:
            answers: The answer set returned by the `__resolve__()` method.
        Returns:
            list: A parsed list of values for each answer.
        """
        values = []

        for rdata in answers:
            if rdata.rdtype == dns.rdatatype.TXT:
                values.append(b"".join(rdata.strings).decode())
            elif rdata.rdtype == dns.rdatatype.NS:
                values.append(rdata.target.to_text(omit_final_dot=True))
            else:
                values.append(rdata.to_text())

        return list(filter(None, values))


def has_nameservers(name: str) -> bool:
    """Checks whether `name` has a non-empty NS record set, i.e. is a delegated zone."""
    return len(DNSQuery(name, rtype="NS").resolve()) > 0


def split_domain(name: str) -> tuple:
    """
    Splits a fully qualified name into the prefix and the delegated zone that hosts it. Every dot-separated suffix of
    the name is checked for NS records, from the longest to the shortest.

    Args:
        name (str): The name to split, e.g. `www.example.com`.

    Returns:
        tuple: A `(prefix, zone)` tuple, e.g. `("www", "example.com")`. The prefix is empty when the name is itself
            a delegated zone.

    Raises:
        simple_acme_renewer.errors.NoDelegatedZone: When no suffix of the name has nameservers.
        simple_acme_renewer.errors.ResolutionError: When a lookup fails.
    """
    if has_nameservers(name):
        return "", name

    for index, char in enumerate(name):
        if char != "." or index + 1 >= len(name):
            continue
        if has_nameservers(name[index + 1:]):
            return name[:index], name[index + 1:]

    raise errors.NoDelegatedZone(f"Failed to find delegated zone for name '{name}'")


def nameserver_addresses(host: str) -> list:
    """
    Resolves a nameserver hostname to its IPv4 and IPv6 addresses.

    Raises:
        simple_acme_renewer.errors.ResolutionError: When either lookup fails.
    """
    return DNSQuery(host, rtype="A").resolve() + DNSQuery(host, rtype="AAAA").resolve()


def query_txt(fqdn: str, addresses: list) -> list:
    """Queries the TXT records of `fqdn` directly against `addresses` with a short timeout."""
    return DNSQuery(fqdn, rtype="TXT", nameservers=addresses, timeout=AUTHORITATIVE_TIMEOUT).resolve()


def check_txt_authoritative(zone: str, host: str, value: str) -> bool:
    """
    Checks a TXT record against every authoritative nameserver of the zone, skipping any caching resolver. The
    record is only considered visible when all of them answer with the expected value. A nameserver that cannot be
    resolved or queried counts as not visible yet.

    Args:
        zone (str): The delegated zone, e.g. `example.com`.
        host (str): The record host inside the zone, e.g. `_acme-challenge.www`.
        value (str): The expected TXT value.

    Returns:
        bool: True when every authoritative nameserver returns `value`.

    Raises:
        simple_acme_renewer.errors.ResolutionError: When the zone's nameservers cannot be looked up.
    """
    fqdn = f"{host}.{zone}"
    nameservers = DNSQuery(zone, rtype="NS").resolve()
    if not nameservers:
        return False

    for nameserver in nameservers:
        try:
            addresses = nameserver_addresses(nameserver)
            values = query_txt(fqdn, addresses) if addresses else []
        except errors.ResolutionError as exc:
            logger.debug("TXT lookup of %s via %s failed: %s", fqdn, nameserver, exc.message)
            return False

        if value not in values:
            logger.debug("Value '%s' for '%s' not found in %s via %s", value, fqdn, values, nameserver)
            return False

    return True


class Deadline:
    """
    A run-scoped deadline combined with a cancellation signal. Every polling loop sleeps through this object so a
    termination request or an expired deadline interrupts it within one polling interval.
    """

    def __init__(self, timeout: float, clock=time.monotonic) -> None:
        """
        Args:
            timeout (float): Seconds from now until the deadline expires.
            clock (callable): Monotonic clock returning seconds, replaceable for testing.
        """
        self._clock = clock
        self._expires = clock() + timeout
        self._event = threading.Event()

    def cancel(self) -> None:
        """Cancels every current and future wait. Safe to call from a signal handler."""
        self._event.set()

    @property
    def cancelled(self) -> bool:
        """True once `cancel()` has been called."""
        return self._event.is_set()

    def remaining(self) -> float:
        """Seconds left before the deadline, never negative."""
        return max(0.0, self._expires - self._clock())

    def as_datetime(self) -> datetime.datetime:
        """The deadline as a naive local datetime, the form the `acme` client polls against."""
        return datetime.datetime.now() + datetime.timedelta(seconds=self.remaining())

    def check(self, what: str = "operation") -> None:
        """
        Raises if the run has been cancelled or the deadline has passed.

        Raises:
            simple_acme_renewer.errors.Cancelled: When the run was cancelled.
            simple_acme_renewer.errors.ChallengeTimeout: When the deadline was reached.
        """
        if self.cancelled:
            raise errors.Cancelled(f"Cancelled while waiting for {what}")
        if self.remaining() <= 0:
            raise errors.ChallengeTimeout(f"Timed out while waiting for {what}")

    def sleep(self, seconds: float, what: str = "operation") -> None:
        """Sleeps up to `seconds`, returning early (by raising) on cancellation or at the deadline."""
        self.check(what)
        self._event.wait(min(seconds, self.remaining()))
        self.check(what)

    def poll_until(self, predicate, what: str, interval: float = POLL_INTERVAL) -> None:
        """
        Calls `predicate` every `interval` seconds until it returns True.

        Raises:
            simple_acme_renewer.errors.Cancelled: When the run was cancelled.
            simple_acme_renewer.errors.ChallengeTimeout: When the deadline was reached first.
        """
        while True:
            self.check(what)
            if predicate():
                return
            self.sleep(interval, what)
