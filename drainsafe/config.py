"""Process configuration, read from the environment (and a .env file when present)."""

import os
from dataclasses import dataclass

from dotenv import load_dotenv

from drainsafe.errors import ConfigurationError
from drainsafe.metadata import DEFAULT_METADATA_URL, DEFAULT_TIMEOUT

load_dotenv()

DEFAULT_OWNER = "drainsafe"
DEFAULT_POLL_INTERVAL = 25.0
DEFAULT_EVENT_NAMESPACE = "default"

NODE_NAME = os.getenv("NODE_NAME", "")
POD_NAME = os.getenv("POD_NAME", "")


@dataclass
class Settings:
    node_name: str = NODE_NAME
    pod_name: str = POD_NAME
    owner: str = DEFAULT_OWNER
    metadata_url: str = DEFAULT_METADATA_URL
    metadata_timeout: float = DEFAULT_TIMEOUT
    poll_interval: float = DEFAULT_POLL_INTERVAL
    event_namespace: str = DEFAULT_EVENT_NAMESPACE
    repairman: bool = False
    kubeconfig: str = ""

    def validate(self, require_node: bool) -> "Settings":
        """Raise ConfigurationError when a required identity value is missing."""
        missing = []
        if require_node and not self.node_name:
            missing.append("NODE_NAME")
        if not self.pod_name:
            missing.append("POD_NAME")
        if missing:
            raise ConfigurationError(f"required environment not set: {', '.join(missing)}")
        if not self.owner:
            raise ConfigurationError("maintenance owner must not be empty")
        if self.poll_interval <= 0:
            raise ConfigurationError(f"poll interval must be positive, got {self.poll_interval}")
        if self.metadata_timeout <= 0:
            raise ConfigurationError(f"metadata timeout must be positive, got {self.metadata_timeout}")
        return self

    @property
    def source(self) -> str:
        """Attribution used in emitted event messages"""
        if self.node_name:
            return f"{self.pod_name} on {self.node_name}"
        return self.pod_name
