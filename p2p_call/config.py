"""
Configuration management for P2P Call.

Handles loading/saving signaling backend and ICE settings to a JSON config file.
"""

from __future__ import annotations

import copy
import json
from pathlib import Path
from typing import Any, Optional

from p2p_call.logging_config import get_logger

logger = get_logger("config")


class Config:
    """
    Application configuration with persistent storage.
    """

    DEFAULT_CONFIG = {
        "signaling": {
            "project_id": None,  # Firebase project; None = taken from credentials
            "credentials_path": None,  # Service account JSON; None = application default
            "emulator_host": None,  # e.g. "localhost:8080" for the Firestore emulator
            "calls_collection": "calls",
            "offer_candidates_collection": "offerCandidates",
            "answer_candidates_collection": "answerCandidates",
        },
        "ice": {
            "server_list_url": None,  # Endpoint returning a JSON list of RTCIceServer dicts
            "servers": [],  # Static list, takes precedence over server_list_url
            "fetch_timeout_sec": 10.0,
        },
        "media": {
            "play_file": None,  # Media file sent as local tracks by the CLI
        },
    }

    def __init__(self, config_path: Optional[Path] = None) -> None:
        """
        Initialize configuration.

        Args:
            config_path: Path to config file. If None, uses ~/.p2p_call/config.json
        """
        if config_path is None:
            config_dir = Path.home() / ".p2p_call"
            config_dir.mkdir(exist_ok=True)
            config_path = config_dir / "config.json"

        self.config_path = config_path
        self._data: dict[str, Any] = {}
        self.load()

    def load(self) -> None:
        """Load configuration from file, or use defaults if file doesn't exist."""
        if self.config_path.exists():
            try:
                with open(self.config_path, "r") as f:
                    loaded = json.load(f)
                if not isinstance(loaded, dict):
                    raise ValueError(f"expected a JSON object, got {type(loaded).__name__}")
                self._data = self._merge_defaults(loaded)
            except Exception as exc:
                logger.error(f"Failed to load config from {self.config_path}: {exc}")
                logger.warning("Using default configuration")
                self._data = copy.deepcopy(self.DEFAULT_CONFIG)
        else:
            self._data = copy.deepcopy(self.DEFAULT_CONFIG)

    def save(self) -> None:
        """Save current configuration to file."""
        try:
            self.config_path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.config_path, "w") as f:
                json.dump(self._data, f, indent=2)
        except Exception as exc:
            logger.error(f"Failed to save config to {self.config_path}: {exc}")

    def _merge_defaults(self, loaded: dict[str, Any]) -> dict[str, Any]:
        """Merge loaded config with defaults to handle missing keys."""
        result = copy.deepcopy(self.DEFAULT_CONFIG)
        for section_key, section_value in loaded.items():
            defaults = result.get(section_key)
            if isinstance(defaults, dict) and isinstance(section_value, dict):
                defaults.update(section_value)
            else:
                result[section_key] = section_value
        return result

    def get(self, section: str, key: str, default: Any = None) -> Any:
        """Get a configuration value."""
        return self._data.get(section, {}).get(key, default)

    def set(self, section: str, key: str, value: Any) -> None:
        """Set a configuration value."""
        if section not in self._data:
            self._data[section] = {}
        self._data[section][key] = value

    def get_section(self, section: str) -> dict[str, Any]:
        """Get an entire configuration section."""
        return copy.deepcopy(self._data.get(section, {}))

    @property
    def firebase_project_id(self) -> Optional[str]:
        return self.get("signaling", "project_id")

    @firebase_project_id.setter
    def firebase_project_id(self, value: Optional[str]) -> None:
        self.set("signaling", "project_id", value)

    @property
    def firebase_credentials_path(self) -> Optional[str]:
        return self.get("signaling", "credentials_path")

    @firebase_credentials_path.setter
    def firebase_credentials_path(self, value: Optional[str]) -> None:
        self.set("signaling", "credentials_path", value)

    @property
    def firestore_emulator_host(self) -> Optional[str]:
        return self.get("signaling", "emulator_host")

    @property
    def collection_names(self) -> dict[str, str]:
        """Map logical table name -> Firestore collection name."""
        return {
            "calls": self.get("signaling", "calls_collection", "calls"),
            "offerCandidates": self.get(
                "signaling", "offer_candidates_collection", "offerCandidates"
            ),
            "answerCandidates": self.get(
                "signaling", "answer_candidates_collection", "answerCandidates"
            ),
        }

    @property
    def ice_server_list_url(self) -> Optional[str]:
        return self.get("ice", "server_list_url")

    @ice_server_list_url.setter
    def ice_server_list_url(self, value: Optional[str]) -> None:
        self.set("ice", "server_list_url", value)

    @property
    def ice_servers(self) -> list[dict[str, Any]]:
        """Static ICE server list (RTCIceServer dictionaries)."""
        return list(self.get("ice", "servers", []) or [])

    @ice_servers.setter
    def ice_servers(self, value: list[dict[str, Any]]) -> None:
        if not isinstance(value, list):
            raise ValueError("ICE servers must be a list")
        self.set("ice", "servers", value)

    @property
    def ice_fetch_timeout(self) -> float:
        """Get timeout in seconds for fetching the ICE server list."""
        return float(self.get("ice", "fetch_timeout_sec", 10.0))

    @ice_fetch_timeout.setter
    def ice_fetch_timeout(self, value: float) -> None:
        if value <= 0:
            raise ValueError("ICE fetch timeout must be positive")
        self.set("ice", "fetch_timeout_sec", float(value))

    @property
    def play_file(self) -> Optional[str]:
        return self.get("media", "play_file")

    @play_file.setter
    def play_file(self, value: Optional[str]) -> None:
        self.set("media", "play_file", value)
