"""
Unit tests for settings loading and validation.
"""

import os
import tempfile
import unittest
from dataclasses import FrozenInstanceError

from pydantic import ValidationError

from cnc_config import (
    ControllerSettings,
    ErrorRecoveryConfig,
    SettingsError,
    load_settings,
    settings_from_dict,
)


class TestSettingsDefaults(unittest.TestCase):
    """Test cases for default settings."""

    def test_defaults(self):
        """Test the documented defaults."""
        settings = ControllerSettings()
        self.assertEqual(settings.recovery.max_retries, 3)
        self.assertEqual(settings.recovery.retry_delay, 1.0)
        self.assertTrue(settings.recovery.auto_recovery_enabled)
        self.assertTrue(settings.recovery.reset_on_critical_error)
        self.assertEqual(settings.monitor.poll_interval, 0.25)
        self.assertEqual(settings.monitor.history_size, 300)
        self.assertEqual(settings.connection.baudrate, 115200)
        self.assertEqual(settings.connection.dialect, "grbl")
        self.assertEqual(settings.console.capacity, 5000)

    def test_immutable(self):
        """Test policies cannot be changed after construction."""
        with self.assertRaises(FrozenInstanceError):
            ErrorRecoveryConfig().max_retries = 10

    def test_from_dict(self):
        """Test partial mappings keep defaults for missing keys."""
        settings = settings_from_dict({"recovery": {"max_retries": 5}, "connection": {"dialect": "TinyG"}})
        self.assertEqual(settings.recovery.max_retries, 5)
        self.assertEqual(settings.recovery.retry_delay, 1.0)
        self.assertEqual(settings.connection.dialect, "tinyg")
        self.assertEqual(settings_from_dict(None), ControllerSettings())

    def test_from_dict_rejects_invalid(self):
        """Test unknown keys, bad bounds and unknown dialects are rejected."""
        for raw in (
            {"recovery": {"retries": 3}},
            {"monitor": {"poll_interval": 0}},
            {"connection": {"dialect": "marlin"}},
            {"logging": {}},
        ):
            with self.assertRaises(ValidationError):
                settings_from_dict(raw)


class TestLoadSettings(unittest.TestCase):
    """Test cases for YAML loading."""

    def write(self, text):
        handle = tempfile.NamedTemporaryFile(mode="w", suffix=".yaml", delete=False)
        with handle:
            handle.write(text)
        self.addCleanup(os.unlink, handle.name)
        return handle.name

    def test_load(self):
        """Test a YAML file maps into the settings dataclasses."""
        path = self.write(
            "connection:\n"
            "  port: /dev/ttyACM0\n"
            "  dialect: fluidnc\n"
            "recovery:\n"
            "  max_retries: 2\n"
            "  reset_on_critical_error: false\n"
            "monitor:\n"
            "  adaptive_timing: true\n"
        )
        settings = load_settings(path)
        self.assertEqual(settings.connection.port, "/dev/ttyACM0")
        self.assertEqual(settings.connection.dialect, "fluidnc")
        self.assertEqual(settings.recovery.max_retries, 2)
        self.assertFalse(settings.recovery.reset_on_critical_error)
        self.assertTrue(settings.monitor.adaptive_timing)

    def test_empty_file(self):
        """Test an empty file yields defaults."""
        self.assertEqual(load_settings(self.write("")), ControllerSettings())

    def test_missing_file(self):
        """Test a missing file raises SettingsError."""
        with self.assertRaises(SettingsError) as context:
            load_settings("/nonexistent/settings.yaml")
        self.assertIn("not found", str(context.exception))

    def test_invalid_yaml(self):
        """Test malformed YAML raises SettingsError."""
        with self.assertRaises(SettingsError):
            load_settings(self.write("recovery: [unclosed\n"))

    def test_invalid_values(self):
        """Test validation failures name the offending field."""
        with self.assertRaises(SettingsError) as context:
            load_settings(self.write("recovery:\n  max_retries: -1\n"))
        self.assertIn("recovery.max_retries", str(context.exception))

    def test_not_a_mapping(self):
        """Test a non-mapping document is rejected."""
        with self.assertRaises(SettingsError):
            load_settings(self.write("- a\n- b\n"))


if __name__ == "__main__":
    unittest.main()
