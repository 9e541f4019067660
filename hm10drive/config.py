"""
hm10drive Environment Configuration Helper

Provides easy access to .env configuration for the launcher and demos.
Automatically loads .env file and provides defaults.
"""

import os
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

from hm10drive.types import (
    HM10_CHARACTERISTIC_UUID,
    HM10_SERVICE_UUID,
    MAX_MAX_SPEED,
    MIN_MAX_SPEED,
    LinkConfig,
)


LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR")


class HM10Config:
    """Configuration manager backed by environment variables"""

    def __init__(self, env_file: Optional[str] = None):
        """
        Initialize configuration

        Args:
            env_file: Path to .env file (default: .env in current directory)
        """
        path = Path(env_file) if env_file is not None else Path(".env")
        self._loaded = False
        if path.exists():
            load_dotenv(path)
            self._loaded = True

    @property
    def device(self) -> Optional[str]:
        """Peripheral address to connect to without scanning"""
        return os.getenv("HM10_DEVICE") or None

    @property
    def service_uuid(self) -> str:
        return os.getenv("HM10_SERVICE_UUID", HM10_SERVICE_UUID)

    @property
    def characteristic_uuid(self) -> str:
        return os.getenv("HM10_CHARACTERISTIC_UUID", HM10_CHARACTERISTIC_UUID)

    @property
    def max_speed(self) -> int:
        """Motor speed bound (default: 500)"""
        return int(os.getenv("HM10_MAX_SPEED", "500"))

    @property
    def send_interval(self) -> float:
        """Minimum seconds between drive commands (default: 50ms)"""
        return int(os.getenv("HM10_SEND_INTERVAL_MS", "50")) / 1000.0

    @property
    def scan_timeout(self) -> float:
        """Scan window in seconds (default: 10)"""
        return float(os.getenv("HM10_SCAN_TIMEOUT", "10"))

    @property
    def link_timeout(self) -> float:
        """Connect/discovery timeout in seconds (default: 10)"""
        return float(os.getenv("HM10_LINK_TIMEOUT", "10"))

    @property
    def log_level(self) -> str:
        return os.getenv("HM10_LOG_LEVEL", "INFO").upper()

    def validate(self) -> tuple[bool, list[str]]:
        """
        Validate configuration

        Returns:
            (is_valid, list_of_errors)
        """
        errors = []

        for name, getter in [
            ("HM10_MAX_SPEED", lambda: self.max_speed),
            ("HM10_SEND_INTERVAL_MS", lambda: self.send_interval),
            ("HM10_SCAN_TIMEOUT", lambda: self.scan_timeout),
            ("HM10_LINK_TIMEOUT", lambda: self.link_timeout),
        ]:
            try:
                value = getter()
            except ValueError:
                errors.append(f"{name} is not a number")
                continue
            if value < 0:
                errors.append(f"{name} must not be negative")

        try:
            if not MIN_MAX_SPEED <= self.max_speed <= MAX_MAX_SPEED:
                errors.append(f"HM10_MAX_SPEED must be within [{MIN_MAX_SPEED}, {MAX_MAX_SPEED}]")
        except ValueError:
            pass

        if self.log_level not in LOG_LEVELS:
            errors.append(f"HM10_LOG_LEVEL must be one of {', '.join(LOG_LEVELS)}")

        return len(errors) == 0, errors

    def to_link_config(self) -> LinkConfig:
        """
        Build a LinkConfig from the environment.

        Raises:
            ValueError: if a value is malformed or out of range
        """
        return LinkConfig(
            service_uuid=self.service_uuid,
            characteristic_uuid=self.characteristic_uuid,
            scan_timeout=self.scan_timeout,
            link_timeout=self.link_timeout,
            send_interval=self.send_interval,
            max_speed=self.max_speed,
        )

    def print_status(self):
        """Print configuration status"""
        print("hm10drive Configuration Status:")
        print(f"  .env loaded:    {'Yes' if self._loaded else 'No'}")
        print(f"  Device:         {self.device or '(not set, scan first)'}")
        print(f"  Service:        {self.service_uuid}")
        print(f"  Characteristic: {self.characteristic_uuid}")

        is_valid, errors = self.validate()
        if is_valid:
            print(f"  Max speed:      {self.max_speed}")
            print(f"  Send interval:  {self.send_interval * 1000:.0f}ms")
            print(f"  Scan timeout:   {self.scan_timeout}s")
            print(f"  Link timeout:   {self.link_timeout}s")
            print("\n  Status: Configuration is valid")
        else:
            print("\n  Status: Configuration has errors:")
            for error in errors:
                print(f"    - {error}")


# Global config instance
_config = None


def get_config(reload: bool = False) -> HM10Config:
    """
    Get the global configuration instance

    Args:
        reload: Force reload of .env file

    Returns:
        HM10Config instance
    """
    global _config
    if _config is None or reload:
        _config = HM10Config()
    return _config
