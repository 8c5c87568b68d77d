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
"""Renewal policy deciding whether a stored certificate must be replaced."""
import datetime
import typing

from cryptography import x509

RENEWAL_WINDOW = datetime.timedelta(days=30)


class RenewalDecision(typing.NamedTuple):
    """The outcome of `needs_renewal()`."""
    needs_new: bool
    expiry: typing.Optional[datetime.datetime] = None
    added: tuple = ()
    removed: tuple = ()


def leaf_names(certificate: x509.Certificate) -> list:
    """Returns the DNS names listed in a certificate's subjectAltName extension."""
    try:
        extension = certificate.extensions.get_extension_for_class(x509.SubjectAlternativeName)
    except x509.ExtensionNotFound:
        return []
    return extension.value.get_values_for_type(x509.DNSName)


def needs_renewal(chain: list, names: list, now: datetime.datetime = None) -> RenewalDecision:
    """
    Decides whether a new certificate must be requested. An expiry within `RENEWAL_WINDOW` is checked before the
    name sets, so it always triggers renewal and is reported in preference to a name change.

    Args:
        chain (list): The stored chain as PEM blocks (leaf first), or None when no certificate is stored.
        names (list): The requested DNS names.
        now (datetime.datetime): An aware UTC "now", defaults to the current time.

    Returns:
        RenewalDecision: `needs_new` plus the current expiry (when it drove the decision or no renewal is needed) or
            the added/removed names (when the name set changed).
    """
    now = now if now else datetime.datetime.now(datetime.timezone.utc)

    if not chain:
        return RenewalDecision(True)
    try:
        leaf = x509.load_pem_x509_certificate(chain[0])
    except ValueError:
        return RenewalDecision(True)

    expiry = leaf.not_valid_after_utc
    if expiry - now < RENEWAL_WINDOW:
        return RenewalDecision(True, expiry=expiry)

    current = leaf_names(leaf)
    added = tuple(name for name in names if name not in current)
    removed = tuple(name for name in current if name not in names)
    if added or removed:
        return RenewalDecision(True, added=added, removed=removed)

    return RenewalDecision(False, expiry=expiry)
