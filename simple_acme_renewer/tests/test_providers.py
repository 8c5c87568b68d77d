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
"""Tests the DNS provider capability and its ClouDNS and Hetzner backends."""
import unittest
from unittest import mock

import requests

from simple_acme_renewer import errors
from simple_acme_renewer import providers
from simple_acme_renewer import tools
from simple_acme_renewer.providers import cloudns, hetzner
from simple_acme_renewer.settings import Settings
from simple_acme_renewer.tests.tools import FakeDNSProvider, fake_split_domain


def json_response(data, status_code: int = 200) -> mock.Mock:
    """Builds a fake `requests.Response` carrying `data` as its JSON body."""
    response = mock.Mock(status_code=status_code, text=str(data), content=b"{}" if data is not None else b"")
    response.json.return_value = data
    return response


class RecordOnlyProvider(providers.DNSProvider):
    """A backend without its own propagation signal."""

    def add_txt_record(self, zone, host, value):
        pass

    def remove_txt_record(self, zone, host, value):
        pass


class TestChallengeHelpers(unittest.TestCase):
    """Tests the helpers built on the provider capability."""

    def test_challenge_host(self):
        """Tests the challenge record host naming."""
        self.assertEqual(providers.challenge_host(""), "_acme-challenge")
        self.assertEqual(providers.challenge_host("www"), "_acme-challenge.www")

    @mock.patch.object(tools, "split_domain", side_effect=fake_split_domain)
    def test_deploy_and_clean(self, _split_domain):
        """Tests that a challenge is published at the right place and removed again."""
        # Variables
        provider = FakeDNSProvider()

        location = providers.deploy_challenge(provider, "www.example.com", "token")
        self.assertEqual(location, ("example.com", "_acme-challenge.www"))
        self.assertEqual(provider.added, [("example.com", "_acme-challenge.www", "token")])

        providers.clean_challenge(provider, "example.com", "_acme-challenge.www", "token")
        self.assertEqual(provider.records[("example.com", "_acme-challenge.www")], [])

    @mock.patch.object(tools, "split_domain", side_effect=fake_split_domain)
    def test_wait_for_challenge_timeout(self, _split_domain):
        """Tests that a record that never propagates ends in ChallengeTimeout."""
        # Variables
        provider = FakeDNSProvider(visible=False)

        zone, host = providers.deploy_challenge(provider, "example.com", "token")
        with self.assertRaises(errors.ChallengeTimeout):
            providers.wait_for_challenge(provider, zone, host, "token", tools.Deadline(0.05), interval=0.01)

    def test_default_check_uses_authoritative_nameservers(self):
        """Tests that backends without a propagation signal check the authoritative nameservers."""
        with mock.patch.object(tools, "check_txt_authoritative", return_value=True) as check:
            self.assertTrue(RecordOnlyProvider().check_txt_record("example.com", "_acme-challenge", "t"))
        check.assert_called_once_with("example.com", "_acme-challenge", "t")

    def test_get_provider_requires_backend(self):
        """Tests that selecting a provider without credentials raises ConfigError."""
        with self.assertRaises(errors.ConfigError):
            providers.get_provider(Settings(data_dir="/tmp"))

    def test_get_provider_selection(self):
        """Tests that ClouDNS is preferred and Hetzner used otherwise."""
        # Variables
        both = Settings(data_dir="/tmp", cloudns_auth_id="1", cloudns_auth_password="pw", hetzner_api_key="key")

        with mock.patch.object(cloudns, "ClouDNS") as cloudns_class:
            with mock.patch.object(hetzner, "Hetzner") as hetzner_class:
                providers.get_provider(both)
                cloudns_class.assert_called_once_with(auth_id="1", sub_auth_id=None, auth_password="pw")
                hetzner_class.assert_not_called()

                providers.get_provider(Settings(data_dir="/tmp", hetzner_api_key="key"))
                hetzner_class.assert_called_once_with(api_key="key")


class TestClouDNS(unittest.TestCase):
    """Tests the ClouDNS backend against a mocked HTTP session."""

    def setUp(self):
        """Creates a backend whose credential check succeeds."""
        self.session = mock.Mock(spec=requests.Session)
        self.session.get.return_value = json_response({"status": "Success"})
        self.provider = cloudns.ClouDNS(auth_id="1234", auth_password="secret", session=self.session)

    def last_params(self) -> dict:
        """Returns the query parameters of the last request."""
        return self.session.get.call_args.kwargs["params"]

    def test_credentials_checked(self):
        """Tests that construction calls the login endpoint with the credentials."""
        self.assertEqual(self.session.get.call_args.args[0], cloudns.API_URL + "/dns/login.json")
        self.assertEqual(self.last_params(), {"auth-id": "1234", "auth-password": "secret"})

    def test_sub_auth_id(self):
        """Tests that a sub-user ID replaces the user ID."""
        cloudns.ClouDNS(auth_id="1234", sub_auth_id="42", auth_password="secret", session=self.session)
        self.assertEqual(self.last_params(), {"sub-auth-id": "42", "auth-password": "secret"})

    def test_rejected_credentials(self):
        """Tests that rejected credentials raise ProviderError."""
        self.session.get.return_value = json_response({"status": "Failed", "statusDescription": "Invalid login"})
        with self.assertRaises(errors.ProviderError) as context:
            cloudns.ClouDNS(auth_id="1234", auth_password="wrong", session=self.session)
        self.assertIn("Invalid login", context.exception.message)

    def test_network_failure(self):
        """Tests that a network failure raises ProviderError."""
        self.session.get.side_effect = requests.ConnectionError("unreachable")
        with self.assertRaises(errors.ProviderError):
            self.provider.add_txt_record("example.com", "_acme-challenge", "token")

    def test_add_txt_record(self):
        """Tests the record creation request."""
        self.provider.add_txt_record("example.com", "_acme-challenge.www", "token")
        self.assertEqual(self.session.get.call_args.args[0], cloudns.API_URL + "/dns/add-record.json")
        self.assertEqual(self.last_params()["domain-name"], "example.com")
        self.assertEqual(self.last_params()["host"], "_acme-challenge.www")
        self.assertEqual(self.last_params()["record"], "token")
        self.assertEqual(self.last_params()["ttl"], "60")

    @mock.patch("time.sleep")
    def test_remove_txt_record(self, sleep):
        """Tests that only matching records are deleted, paced one second apart."""
        self.session.get.side_effect = [
            json_response({
                "1": {"record": "token"},
                "2": {"record": "other"},
                "3": {"record": "token"},
            }),
            json_response({"status": "Success"}),
            json_response({"status": "Success"}),
        ]

        self.provider.remove_txt_record("example.com", "_acme-challenge", "token")

        deleted = [call.kwargs["params"]["record-id"] for call in self.session.get.call_args_list[2:]]
        self.assertEqual(deleted, ["1", "3"])
        sleep.assert_called_once_with(providers.DELETE_INTERVAL)

    def test_remove_missing_record(self):
        """Tests that removing the same record twice is a no-op the second time."""
        self.session.get.side_effect = [
            json_response({"1": {"record": "token"}}),
            json_response({"status": "Success"}),
            json_response([]),
        ]

        self.provider.remove_txt_record("example.com", "_acme-challenge", "token")
        self.provider.remove_txt_record("example.com", "_acme-challenge", "token")

        endpoints = [call.args[0] for call in self.session.get.call_args_list[1:]]
        self.assertEqual(endpoints, [
            cloudns.API_URL + "/dns/records.json",
            cloudns.API_URL + "/dns/delete-record.json",
            cloudns.API_URL + "/dns/records.json",
        ])

    def test_non_json_error_page(self):
        """Tests that an HTML error page raises ProviderError carrying the HTTP status."""
        response = mock.Mock(status_code=502, text="<html>Bad Gateway</html>")
        response.json.side_effect = requests.exceptions.JSONDecodeError("Expecting value", response.text, 0)
        self.session.get.return_value = response

        with self.assertRaises(errors.ProviderError) as context:
            self.provider.add_txt_record("example.com", "_acme-challenge", "token")
        self.assertEqual(context.exception.status, 502)
        self.assertIn("Bad Gateway", context.exception.message)

    def test_check_txt_record(self):
        """Tests that the is-updated signal is used for propagation."""
        self.session.get.return_value = json_response(True)
        self.assertTrue(self.provider.check_txt_record("example.com", "_acme-challenge", "token"))

        self.session.get.return_value = json_response(False)
        self.assertFalse(self.provider.check_txt_record("example.com", "_acme-challenge", "token"))

        self.session.get.return_value = json_response({"status": "Failed", "statusDescription": "Missing domain"})
        self.assertFalse(self.provider.check_txt_record("example.com", "_acme-challenge", "token"))


class TestHetzner(unittest.TestCase):
    """Tests the Hetzner DNS backend against a mocked HTTP session."""

    # Variables
    zones = {"zones": [{"id": "zone-1", "name": "example.com"}]}

    def setUp(self):
        """Creates a backend whose credential check succeeds."""
        self.session = mock.Mock(spec=requests.Session)
        self.session.request.return_value = json_response({"zones": []})
        self.provider = hetzner.Hetzner(api_key="token", session=self.session)

    def test_credentials_checked(self):
        """Tests that construction sends an authenticated zones request."""
        call = self.session.request.call_args
        self.assertEqual(call.args, ("GET", hetzner.API_URL + "/api/v1/zones"))
        self.assertEqual(call.kwargs["headers"], {"Auth-API-Token": "token"})

    def test_rejected_credentials(self):
        """Tests that a non-200 answer raises ProviderError carrying the status."""
        self.session.request.return_value = json_response({"message": "Invalid authentication credentials"}, 401)
        with self.assertRaises(errors.ProviderError) as context:
            hetzner.Hetzner(api_key="wrong", session=self.session)
        self.assertEqual(context.exception.status, 401)
        self.assertIn("Invalid authentication credentials", context.exception.message)

    def test_add_txt_record(self):
        """Tests that the zone is looked up and the record created in it."""
        self.session.request.side_effect = [json_response(self.zones), json_response({"record": {}})]

        self.provider.add_txt_record("example.com", "_acme-challenge.www", "token")

        call = self.session.request.call_args
        self.assertEqual(call.args, ("POST", hetzner.API_URL + "/api/v1/records"))
        self.assertEqual(call.kwargs["json"], {
            "name": "_acme-challenge.www", "ttl": 60, "type": "TXT", "value": "token", "zone_id": "zone-1"
        })

    def test_unknown_zone(self):
        """Tests that a zone missing from the account raises ProviderError."""
        self.session.request.return_value = json_response({"zones": []})
        with self.assertRaises(errors.ProviderError):
            self.provider.add_txt_record("example.org", "_acme-challenge", "token")

    @mock.patch("time.sleep")
    def test_remove_txt_record(self, sleep):
        """Tests that only TXT records matching host and value are deleted, paced one second apart."""
        self.session.request.side_effect = [
            json_response(self.zones),
            json_response({"records": [
                {"id": "r1", "name": "_acme-challenge", "type": "TXT", "value": "token"},
                {"id": "r2", "name": "_acme-challenge", "type": "TXT", "value": "other"},
                {"id": "r3", "name": "www", "type": "TXT", "value": "token"},
                {"id": "r4", "name": "_acme-challenge", "type": "TXT", "value": "token"},
            ]}),
            json_response(None),
            json_response(None),
        ]

        self.provider.remove_txt_record("example.com", "_acme-challenge", "token")

        deleted = [call.args for call in self.session.request.call_args_list[-2:]]
        self.assertEqual(deleted, [
            ("DELETE", hetzner.API_URL + "/api/v1/records/r1"),
            ("DELETE", hetzner.API_URL + "/api/v1/records/r4"),
        ])
        sleep.assert_called_once_with(providers.DELETE_INTERVAL)

    def test_remove_missing_record(self):
        """Tests that removing the same record twice is a no-op the second time."""
        self.session.request.side_effect = [
            json_response(self.zones),
            json_response({"records": [{"id": "r1", "name": "_acme-challenge", "type": "TXT", "value": "token"}]}),
            json_response(None),
            json_response(self.zones),
            json_response({"records": []}),
        ]

        self.provider.remove_txt_record("example.com", "_acme-challenge", "token")
        self.provider.remove_txt_record("example.com", "_acme-challenge", "token")

        methods = [call.args[0] for call in self.session.request.call_args_list[1:]]
        self.assertEqual(methods, ["GET", "GET", "DELETE", "GET", "GET"])


if __name__ == "__main__":
    unittest.main()
