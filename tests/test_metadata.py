import pytest
import requests

from drainsafe.errors import TransportError
from drainsafe.metadata import ScheduledEvent, is_actionable, is_in_flight

from fakes import EVENT_ID, INSTANCE, event, scheduled_events


class TestInstanceId:

    def test_returns_instance_name(self, metadata, session):
        session.instance = "dummyvmname\n"
        assert metadata.current_instance_id() == "dummyvmname"
        method, url, params, _, headers = session.requests[0]
        assert method == "GET"
        assert url == "http://169.254.169.254/metadata/instance/compute/name"
        assert params["format"] == "text"
        assert headers["Metadata"] == "true"

    def test_non_success_status(self, metadata, session):
        session.get_status = 500
        with pytest.raises(TransportError):
            metadata.current_instance_id()

    def test_network_failure(self, metadata, session):
        session.error = requests.ConnectionError("no route to host")
        with pytest.raises(TransportError):
            metadata.current_instance_id()


class TestScheduledEvents:

    def test_parses_document(self, metadata, session):
        session.document = scheduled_events(event())
        events = metadata.list_scheduled_events()
        assert events == [ScheduledEvent(
            event_id=EVENT_ID,
            event_status="Scheduled",
            event_type="Reboot",
            resource_type="VirtualMachine",
            resources=[INSTANCE],
            not_before="Sun, 30 Jun 2019 16:22:03 GMT",
        )]

    def test_empty_document(self, metadata, session):
        session.document = {"DocumentIncarnation": 3, "Events": []}
        assert metadata.list_scheduled_events() == []

    def test_malformed_body(self, metadata, session):
        session.document = "{malformedurl"
        with pytest.raises(TransportError):
            metadata.list_scheduled_events()

    def test_null_fields_are_tolerated(self, metadata, session):
        untyped = event()
        untyped["EventType"] = None
        session.document = scheduled_events(untyped, event(resources=[None, INSTANCE], event_id="second"))
        events = metadata.list_scheduled_events()
        assert events[0].event_type == ""
        assert events[1].resources == [INSTANCE]
        assert [e.event_id for e in metadata.actionable_events(INSTANCE)] == ["second"]

    def test_actionable_events_filters_other_instances(self, metadata, session):
        session.document = scheduled_events(event())
        assert metadata.actionable_events("dummyinstancename") == []
        assert [e.event_type for e in metadata.actionable_events(INSTANCE)] == ["Reboot"]


class TestApprove:

    def test_posts_start_request(self, metadata, session):
        metadata.approve(EVENT_ID)
        [(method, url, _, body, headers)] = session.posts()
        assert method == "POST"
        assert url == "http://169.254.169.254/metadata/scheduledevents"
        assert body == {"StartRequests": [{"EventId": EVENT_ID}]}
        assert headers["Metadata"] == "true"

    def test_non_success_status(self, metadata, session):
        session.post_status = 400
        with pytest.raises(TransportError):
            metadata.approve(EVENT_ID)


class TestClassification:

    @pytest.mark.parametrize("event_type", ["Reboot", "Redeploy", "Preempt", "Terminate", "Freeze", "reboot"])
    def test_disruptive_types_are_actionable(self, event_type):
        assert is_actionable(ScheduledEvent.from_json(event(event_type=event_type)), INSTANCE)

    def test_unknown_type_is_ignored(self):
        assert not is_actionable(ScheduledEvent.from_json(event(event_type="LiveMigrate")), INSTANCE)

    def test_only_scheduled_status(self):
        started = ScheduledEvent.from_json(event(status="Started"))
        assert not is_actionable(started, INSTANCE)
        assert is_in_flight(started, INSTANCE)

    def test_instance_match_is_case_insensitive(self):
        assert is_actionable(ScheduledEvent.from_json(event(resources=["ControlPlane_0"])), INSTANCE)

    def test_only_virtual_machines(self):
        assert not is_actionable(ScheduledEvent.from_json(event(resource_type="Disk")), INSTANCE)

    def test_type_is_normalised(self):
        assert ScheduledEvent.from_json(event(event_type="PREEMPT")).maintenance_type == "Preempt"
