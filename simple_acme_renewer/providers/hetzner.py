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
"""Hetzner DNS backend for the DNS provider capability."""
import logging
import time

import requests

from .. import errors
from . import DELETE_INTERVAL, RECORD_TTL, DNSProvider

logger = logging.getLogger(__name__)

API_URL = "https://dns.hetzner.com"
REQUEST_TIMEOUT = 30


class Hetzner(DNSProvider):
    """
    DNS provider using the Hetzner DNS API. Hetzner has no propagation signal, so record visibility is checked
    against the zone's authoritative nameservers.
    """

    def __init__(self, api_key: str, session: requests.Session = None) -> None:
        """
        Args:
            api_key (str): The Hetzner DNS API token.
            session (requests.Session): The HTTP session to use.

        Raises:
            simple_acme_renewer.errors.ProviderError: When the token is rejected.
        """
        self.api_key = api_key
        self.session = session if session else requests.Session()

        # Check that authentication works before any certificate work starts
        self.request("GET", "/api/v1/zones", params={"per_page": "1"})

    def request(self, method: str, endpoint: str, params: dict = None, data: dict = None) -> dict:
        """
        Sends an authenticated request to the Hetzner DNS API.

        Returns:
            dict: The decoded JSON response, or an empty dict for responses without a body.

        Raises:
            simple_acme_renewer.errors.ProviderError: When the request fails or returns a non-200 status.
        """
        try:
            response = self.session.request(
                method,
                API_URL + endpoint,
                params=params,
                json=data,
                headers={"Auth-API-Token": self.api_key},
                timeout=REQUEST_TIMEOUT
            )
        except requests.RequestException as exc:
            raise errors.ProviderError(f"hetzner: request to {endpoint} failed: {exc}") from exc

        if response.status_code != 200:
            try:
                message = response.json().get("message", response.text)
            except ValueError:
                message = response.text
            raise errors.ProviderError(
                f"hetzner: request failed ({response.status_code}): {message}",
                status=response.status_code
            )

        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError as exc:
            raise errors.ProviderError(
                f"hetzner: invalid response from {endpoint}: {response.text}", status=response.status_code
            ) from exc

    def get_zone_id(self, zone: str) -> str:
        """
        Looks up the ID of a zone by its name.

        Raises:
            simple_acme_renewer.errors.ProviderError: When zero or several zones match.
        """
        zones = self.request("GET", "/api/v1/zones", params={"name": zone}).get("zones") or []

        if not zones:
            raise errors.ProviderError(f"hetzner: zone not found: {zone}")
        if len(zones) > 1:
            raise errors.ProviderError(f"hetzner: more than one zone found: {zone}")
        if zones[0].get("name") != zone:
            raise errors.ProviderError(f"hetzner: returned zone does not match: '{zone}' != '{zones[0].get('name')}'")

        return zones[0]["id"]

    def add_txt_record(self, zone: str, host: str, value: str) -> None:
        zone_id = self.get_zone_id(zone)
        logger.debug("adding TXT record %s.%s", host, zone)
        self.request("POST", "/api/v1/records", data={
            "name": host,
            "ttl": RECORD_TTL,
            "type": "TXT",
            "value": value,
            "zone_id": zone_id,
        })

    def remove_txt_record(self, zone: str, host: str, value: str) -> None:
        zone_id = self.get_zone_id(zone)
        records = self.request("GET", "/api/v1/records", params={"zone_id": zone_id}).get("records") or []

        deleted = 0
        for record in records:
            if record.get("name") != host or record.get("type") != "TXT" or record.get("value") != value:
                continue
            if deleted > 0:
                time.sleep(DELETE_INTERVAL)

            logger.debug("deleting TXT record %s.%s (%s)", host, zone, record["id"])
            self.request("DELETE", f"/api/v1/records/{record['id']}")
            deleted += 1
