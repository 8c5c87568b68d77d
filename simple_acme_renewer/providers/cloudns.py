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
"""ClouDNS backend for the DNS provider capability."""
import logging
import time

import requests

from .. import errors
from . import DELETE_INTERVAL, RECORD_TTL, DNSProvider

logger = logging.getLogger(__name__)

API_URL = "https://api.cloudns.net"
REQUEST_TIMEOUT = 30


class ClouDNS(DNSProvider):
    """
    DNS provider using the ClouDNS HTTP API. ClouDNS exposes its own propagation signal (`is-updated`), which is
    used instead of querying the authoritative nameservers.
    """

    def __init__(self, auth_id: str = None, sub_auth_id: str = None, auth_password: str = None,
                 session: requests.Session = None) -> None:
        """
        Args:
            auth_id (str): The API user ID. Ignored when `sub_auth_id` is set.
            sub_auth_id (str): The API sub-user ID.
            auth_password (str): The API user password.
            session (requests.Session): The HTTP session to use.

        Raises:
            simple_acme_renewer.errors.ProviderError: When the credentials are rejected.
        """
        self.auth_id = auth_id
        self.sub_auth_id = sub_auth_id
        self.auth_password = auth_password
        self.session = session if session else requests.Session()

        # Check that authentication works before any certificate work starts
        self.request("/dns/login.json")

    def request(self, endpoint: str, params: dict = None):
        """
        Sends an authenticated request to the ClouDNS API.

        Returns:
            The decoded JSON response.

        Raises:
            simple_acme_renewer.errors.ProviderError: When the request fails or ClouDNS reports a failed status.
        """
        params = dict(params) if params else {}
        if self.sub_auth_id:
            params["sub-auth-id"] = self.sub_auth_id
        else:
            params["auth-id"] = self.auth_id
        params["auth-password"] = self.auth_password

        try:
            response = self.session.get(API_URL + endpoint, params=params, timeout=REQUEST_TIMEOUT)
        except requests.RequestException as exc:
            raise errors.ProviderError(f"cloudns: request to {endpoint} failed: {exc}") from exc

        try:
            data = response.json()
        except ValueError as exc:
            raise errors.ProviderError(
                f"cloudns: invalid response from {endpoint} ({response.status_code}): {response.text}",
                status=response.status_code
            ) from exc

        # Some endpoints (e.g. is-updated) answer with a bare JSON value instead of an object
        if isinstance(data, dict) and str(data.get("status", "")).lower() == "failed":
            raise errors.ProviderError(f"cloudns: {data.get('statusDescription', '')}", status=data.get("status"))

        return data

    def add_txt_record(self, zone: str, host: str, value: str) -> None:
        logger.debug("adding TXT record %s.%s", host, zone)
        self.request("/dns/add-record.json", {
            "domain-name": zone,
            "record-type": "TXT",
            "host": host,
            "record": value,
            "ttl": str(RECORD_TTL),
        })

    def remove_txt_record(self, zone: str, host: str, value: str) -> None:
        records = self.request("/dns/records.json", {
            "domain-name": zone,
            "type": "TXT",
            "host": host,
            "rows-per-page": "100",
        })

        # ClouDNS answers with an empty list instead of an empty object when there are no records
        if not isinstance(records, dict):
            return

        deleted = 0
        for record_id, record in records.items():
            if record.get("record") != value:
                continue
            if deleted > 0:
                time.sleep(DELETE_INTERVAL)

            logger.debug("deleting TXT record %s.%s (%s)", host, zone, record_id)
            self.request("/dns/delete-record.json", {
                "domain-name": zone,
                "record-id": record_id,
            })
            deleted += 1

    def check_txt_record(self, zone: str, host: str, value: str) -> bool:
        try:
            return self.request("/dns/is-updated.json", {"domain-name": zone}) is True
        except errors.ProviderError as exc:
            logger.debug("cloudns: propagation check for %s failed: %s", zone, exc.message)
            return False
