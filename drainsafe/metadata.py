"""
Azure instance metadata service client

Resolves the instance name of this VM, lists the scheduled events the platform
has announced against it and approves them once the node is safe to disrupt.

No retries happen here: callers decide whether retrying is safe given the node
state.
"""

import json
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import requests
from loguru import logger

from drainsafe import annotations
from drainsafe.errors import TransportError

DEFAULT_METADATA_URL = "http://169.254.169.254/metadata"
INSTANCE_API_VERSION = "2019-06-01"
SCHEDULED_EVENTS_API_VERSION = "2017-11-01"
DEFAULT_TIMEOUT = 10.0

# Event status values
STATUS_SCHEDULED = "Scheduled"
STATUS_STARTED = "Started"
STATUS_COMPLETED = "Completed"

VIRTUAL_MACHINE = "VirtualMachine"


def _text(data: Dict[str, Any], key: str) -> str:
    # Fields may be missing, null or of the wrong type
    value = data.get(key)
    return value if isinstance(value, str) else ""


# {
#   "DocumentIncarnation": 1,
#   "Events": [
#     {
#       "EventId": "F3E6E2D2-E86A-47F0-AA8E-18918049A2B1",
#       "EventStatus": "Scheduled",
#       "EventType": "Reboot",
#       "ResourceType": "VirtualMachine",
#       "Resources": ["controlplane_0"],
#       "NotBefore": "Sun, 30 Jun 2019 16:22:03 GMT"
#     }
#   ]
# }
@dataclass
class ScheduledEvent:
    """A disruptive action the platform announced for one or more instances"""
    event_id: str
    event_status: str
    event_type: str
    resource_type: str
    resources: List[str] = field(default_factory=list)
    not_before: str = ""

    @classmethod
    def from_json(cls, data: Dict[str, Any]) -> "ScheduledEvent":
        return cls(
            event_id=_text(data, "EventId"),
            event_status=_text(data, "EventStatus"),
            event_type=_text(data, "EventType"),
            resource_type=_text(data, "ResourceType"),
            resources=[r for r in data.get("Resources") or [] if isinstance(r, str)],
            not_before=_text(data, "NotBefore"),
        )

    @property
    def maintenance_type(self) -> str:
        """Event type in its canonical spelling, or the raw value when unknown"""
        for known in annotations.DISRUPTIVE_TYPES:
            if self.event_type.lower() == known.lower():
                return known
        return self.event_type

    def affects(self, instance_id: str) -> bool:
        if self.resource_type != VIRTUAL_MACHINE:
            return False
        return any(r.lower() == instance_id.lower() for r in self.resources)

    def is_disruptive(self) -> bool:
        return self.maintenance_type in annotations.DISRUPTIVE_TYPES


def is_actionable(event: ScheduledEvent, instance_id: str) -> bool:
    """Scheduled, disruptive and aimed at this instance"""
    return (event.event_status == STATUS_SCHEDULED
            and event.is_disruptive()
            and event.affects(instance_id))


def is_in_flight(event: ScheduledEvent, instance_id: str) -> bool:
    """Approved or forced by the platform and still executing against this instance"""
    return (event.event_status == STATUS_STARTED
            and event.is_disruptive()
            and event.affects(instance_id))


class MetadataClient:
    """Client for the instance metadata endpoint"""

    def __init__(self, base_url: str = DEFAULT_METADATA_URL, timeout: float = DEFAULT_TIMEOUT,
                 session: Optional[requests.Session] = None):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()
        self.session.headers.update({"Metadata": "true"})

    def _request(self, method: str, path: str, params: Dict[str, str], **kwargs) -> requests.Response:
        url = f"{self.base_url}{path}"
        try:
            resp = self.session.request(method, url, params=params, timeout=self.timeout, **kwargs)
        except requests.RequestException as e:
            raise TransportError(f"{method} {url} failed: {e}") from e
        if resp.status_code < 200 or resp.status_code > 299:
            raise TransportError(f"{method} {url} received non success status code {resp.status_code}")
        return resp

    def current_instance_id(self) -> str:
        """Name of this VM (scale set instance or availability set member)"""
        resp = self._request("GET", "/instance/compute/name",
                             {"api-version": INSTANCE_API_VERSION, "format": "text"})
        return resp.text.strip()

    def list_scheduled_events(self) -> List[ScheduledEvent]:
        resp = self._request("GET", "/scheduledevents", {"api-version": SCHEDULED_EVENTS_API_VERSION})
        try:
            document = json.loads(resp.text)
            events = document.get("Events") or []
            return [ScheduledEvent.from_json(e) for e in events]
        except (ValueError, AttributeError, TypeError) as e:
            raise TransportError(f"malformed scheduled events document: {e}") from e

    def actionable_events(self, instance_id: str) -> List[ScheduledEvent]:
        return [e for e in self.list_scheduled_events() if is_actionable(e, instance_id)]

    def approve(self, event_id: str) -> None:
        """Tell the platform it may start the event right away"""
        body = {"StartRequests": [{"EventId": event_id}]}
        logger.info(f"Approving scheduled event {event_id}")
        self._request("POST", "/scheduledevents", {"api-version": SCHEDULED_EVENTS_API_VERSION},
                      json=body)
