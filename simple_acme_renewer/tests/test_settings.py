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
"""Tests the run settings."""
import dataclasses
import datetime
import os
import tempfile
import unittest

from simple_acme_renewer import errors
from simple_acme_renewer import settings
from simple_acme_renewer.settings import Settings


class TestSettings(unittest.TestCase):
    """Tests reading the settings from the environment."""

    def setUp(self):
        """Creates temporary data and config directories."""
        self.tmp = tempfile.TemporaryDirectory()
        self.addCleanup(self.tmp.cleanup)
        self.config_dir = os.path.join(self.tmp.name, "config")
        os.makedirs(self.config_dir)

    def environ(self, **extra) -> dict:
        """Builds a minimal valid environment, extended with `extra` (names without the prefix)."""
        environ = {
            "ACME_DNS_DATA_DIR": os.path.join(self.tmp.name, "data"),
            "ACME_DNS_CONFIG_DIR": self.config_dir,
            "ACME_DNS_HETZNER_API_KEY": "token",
        }
        environ.update({settings.ENV_PREFIX + key: value for key, value in extra.items()})
        return environ

    def write_config(self, name: str, content: str) -> None:
        """Writes a certificate request file."""
        with open(os.path.join(self.config_dir, name), "w", encoding="utf-8") as config_file:
            config_file.write(content)

    def test_defaults(self):
        """Tests the default settings."""
        config = Settings.from_environ(self.environ())

        self.assertFalse(config.production)
        self.assertFalse(config.force)
        self.assertEqual(config.timeout, datetime.timedelta(minutes=15))
        self.assertEqual(config.key_type, "ec384")
        self.assertEqual(config.certificates, ())
        self.assertEqual(config.update_command, ())
        self.assertIsNone(config.email)
        self.assertEqual(config.directory, settings.STAGING_DIRECTORY)

    def test_values(self):
        """Tests that every setting is read from its variable."""
        config = Settings.from_environ(self.environ(
            PRODUCTION="true",
            FORCE="1",
            TIMEOUT_MINUTES="5",
            EMAIL="admin@example.com",
            KEY_TYPE="RSA4096",
            UPDATE_COMMAND="systemctl reload 'my nginx'",
            LOG_LEVEL="debug",
        ))

        self.assertTrue(config.production)
        self.assertTrue(config.force)
        self.assertEqual(config.timeout, datetime.timedelta(minutes=5))
        self.assertEqual(config.email, "admin@example.com")
        self.assertEqual(config.key_type, "rsa4096")
        self.assertEqual(config.update_command, ("systemctl", "reload", "my nginx"))
        self.assertEqual(config.log_level, "DEBUG")
        self.assertEqual(config.directory, settings.PRODUCTION_DIRECTORY)

    def test_settings_are_immutable(self):
        """Tests that the settings cannot be modified once read."""
        config = Settings.from_environ(self.environ())
        with self.assertRaises(dataclasses.FrozenInstanceError):
            config.force = True

    def test_invalid_values(self):
        """Tests that invalid values raise ConfigError."""
        for extra in ({"TIMEOUT_MINUTES": "0"}, {"TIMEOUT_MINUTES": "soon"}, {"EMAIL": "not-an-email"},
                      {"KEY_TYPE": "dsa"}, {"LOG_LEVEL": "chatty"}, {"DATA_DIR": ""},
                      {"CLOUDNS_AUTH_ID": "1234"}, {"CLOUDNS_AUTH_PASSWORD": "secret"},
                      {"UPDATE_COMMAND": "echo 'unbalanced"}):
            with self.subTest(extra=extra):
                with self.assertRaises(errors.ConfigError):
                    Settings.from_environ(self.environ(**extra))

    def test_provider_required(self):
        """Tests that a missing DNS provider is a configuration error."""
        # Variables
        environ = self.environ()
        del environ["ACME_DNS_HETZNER_API_KEY"]

        with self.assertRaises(errors.ConfigError):
            Settings.from_environ(environ)

    def test_read_certificates(self):
        """Tests that request files are read in name order, skipping comments, blanks and hidden files."""
        self.write_config("20-api", "api.example.com\n")
        self.write_config("10-main", "# main site\n\nexample.com www.example.com *.example.com\n  other.example.org\n")
        self.write_config(".hidden", "hidden.example.com\n")

        config = Settings.from_environ(self.environ())

        self.assertEqual(config.certificates, (
            ("example.com", "www.example.com", "*.example.com"),
            ("other.example.org",),
            ("api.example.com",),
        ))

    def test_wildcard_common_name(self):
        """Tests that a wildcard common name is rejected."""
        self.write_config("certs", "*.example.com example.com\n")
        with self.assertRaises(errors.ConfigError):
            Settings.from_environ(self.environ())

    def test_invalid_name(self):
        """Tests that an invalid DNS name is rejected."""
        self.write_config("certs", "example.com bad_name..example.com\n")
        with self.assertRaises(errors.InvalidDomain):
            Settings.from_environ(self.environ())

    def test_duplicate_common_name(self):
        """Tests that a common name configured twice is rejected, even across files."""
        self.write_config("a", "example.com\n")
        self.write_config("b", "example.com www.example.com\n")
        with self.assertRaises(errors.ConfigError):
            Settings.from_environ(self.environ())

    def test_missing_config_dir(self):
        """Tests that an unreadable config directory is a configuration error."""
        with self.assertRaises(errors.ConfigError):
            Settings.from_environ(self.environ(CONFIG_DIR=os.path.join(self.tmp.name, "missing")))


if __name__ == "__main__":
    unittest.main()
