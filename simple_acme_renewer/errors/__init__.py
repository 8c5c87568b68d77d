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
"""Custom exception classes for simple_acme_renewer."""


class ACMERenewerError(Exception):
    """Base class for every error raised by simple_acme_renewer."""
    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ConfigError(ACMERenewerError):
    """Error occurs when a setting is missing or invalid. Aborts the whole run."""


class ResolutionError(ACMERenewerError):
    """Error occurs when a DNS lookup fails for a reason other than the record not existing"""


class ProviderError(ACMERenewerError):
    """Error occurs when a DNS provider backend rejects a request"""
    def __init__(self, message: str, status=None) -> None:
        super().__init__(message)
        self.status = status


class NoDelegatedZone(ACMERenewerError):
    """Error occurs when no suffix of a name has authoritative nameservers"""


class NoDNS01Challenge(ACMERenewerError):
    """Error occurs when the ACME server does not offer the DNS-01 challenge for an authorization"""


class AuthorizationFailed(ACMERenewerError):
    """Error occurs when an authorization ends in a state other than valid"""


class ChallengeTimeout(ACMERenewerError):
    """Error occurs when the run deadline is reached while waiting for an external event"""


class Cancelled(ACMERenewerError):
    """Error occurs when the run is cancelled by a termination signal while waiting"""


class PersistenceError(ACMERenewerError):
    """Error occurs when key or certificate material cannot be written to or read from disk"""


class AlreadyExists(PersistenceError):
    """Error occurs when a timestamped artifact would overwrite an existing file"""


class AlreadyLocked(ACMERenewerError):
    """Error occurs when another run already holds the data directory lock"""


class InvalidKeyType(ConfigError):
    """Error occurs when the requested private key type is unsupported"""


class InvalidDomain(ConfigError):
    """Error occurs when a certificate request contains an invalid name"""


class InvalidEmail(ConfigError):
    """Error occurs when the account contact email is not a valid email address"""


class CommandError(ACMERenewerError):
    """Error occurs when a post-issuance command fails"""
