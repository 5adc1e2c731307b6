"""End-to-end provisioning scenarios against fake collaborators."""

from __future__ import annotations

import asyncio
import re

import pytest

from conftest import (
    PUBLIC_KEY,
    ConnectionRecorder,
    FakeCloudProvider,
    FakeSourceControl,
    FakeTransport,
    Harness,
    make_request,
    setup_factory,
)
from devbox.errors import InstanceNotFoundError, ProviderError, ValidationError
from devbox.engine import StageRegistry
from devbox.orchestrator import RepositoryRequest, configure, prepare, registry
from devbox.progress import EventKind, Stage


def stages(harness: Harness, tracking_id: str) -> list[Stage]:
    return [
        event.stage
        for event in harness.tracker.events(tracking_id)
        if event.kind in (EventKind.STAGE, EventKind.ERROR)
    ]


def messages(harness: Harness, tracking_id: str, kind: EventKind) -> list[str]:
    return [event.message for event in harness.tracker.events(tracking_id) if event.kind is kind]


def assert_ordered(observed: list[Stage]) -> None:
    orders = [stage.order for stage in observed]
    assert orders == sorted(set(orders))
    assert observed[-1].terminal
    assert sum(stage.terminal for stage in observed) == 1


class TestHappyPath:
    def test_box1_minimal(self, harness):
        tracking_id, ok = harness.provision(make_request())

        assert ok
        assert stages(harness, tracking_id) == [
            Stage.PREPARING,
            Stage.CREATING,
            Stage.CONFIGURING,
            Stage.FINALIZING,
            Stage.COMPLETE,
        ]
        assert harness.provider.get_calls == 3
        assert len(harness.connections.calls) == 1
        assert harness.transport.started == []

        complete = harness.tracker.latest(tracking_id)
        assert complete.message == "VM box1 created successfully!"
        assert complete.percent == 100
        assert complete.instance_id == "7283645510923"

    def test_instance_facts_recorded(self, harness):
        harness.provision(make_request())

        assert harness.instances.instance_ids == {"rec-1": "7283645510923"}
        assert harness.instances.public_addresses == {"rec-1": "203.0.113.10"}

    def test_instance_spec_sent_to_provider(self, harness):
        harness.provision(make_request(machine_type="e2-standard-4", startup_script="echo hi"))

        (spec,) = harness.provider.created
        assert spec.name == "box1"
        assert spec.zone == "us-central1-a"
        assert spec.machine_type == "e2-standard-4"
        assert spec.startup_script == "echo hi"

    def test_repository_and_boot_script(self, harness):
        request = make_request(
            repository=RepositoryRequest.parse("https://github.com/octo/hello.git"),
            boot_script="echo booted",
        )
        tracking_id, ok = harness.provision(request)

        assert ok
        assert stages(harness, tracking_id) == [
            Stage.PREPARING,
            Stage.CREATING,
            Stage.CONFIGURING,
            Stage.INSTALLING,
            Stage.FINALIZING,
            Stage.COMPLETE,
        ]
        assert messages(harness, tracking_id, EventKind.WARNING) == []

        (registered,) = harness.source_control.registered
        user_id, title, key = registered
        assert user_id == "user-1"
        assert re.fullmatch(r"DevBox VM: box1 \(\d{4}-\d{2}-\d{2}\)", title)
        assert key == PUBLIC_KEY

        keygen, clone, boot = harness.transport.scripts()
        assert "ssh-keygen" in keygen
        assert "git@github.com:octo/hello.git" in clone
        assert "alice@example.com" in clone
        assert boot == "echo booted"
        assert {host for host, _ in harness.transport.started} == {"203.0.113.10"}

        outputs = [
            event.output.text
            for event in harness.tracker.events(tracking_id)
            if event.kind is EventKind.OUTPUT
        ]
        assert "booted\n" in outputs
        assert len(harness.sessions) == 0

    def test_background_start_and_wait(self, harness):
        async def main():
            tracking_id = harness.orchestrator.start(make_request())
            assert harness.orchestrator.active == [tracking_id]
            result = await harness.orchestrator.wait(tracking_id)
            return tracking_id, result

        tracking_id, result = asyncio.run(main())
        assert result is True
        assert harness.tracker.stage(tracking_id) is Stage.COMPLETE
        assert harness.orchestrator.active == []


class TestMandatoryFailures:
    def test_running_probe_exhaustion_is_fatal(self):
        harness = Harness(provider=FakeCloudProvider(("PROVISIONING",)))
        tracking_id, ok = harness.provision(make_request(boot_script="echo never"))

        assert not ok
        observed = stages(harness, tracking_id)
        assert observed == [Stage.PREPARING, Stage.CREATING, Stage.CONFIGURING, Stage.ERROR]
        assert Stage.INSTALLING not in observed
        assert Stage.FINALIZING not in observed
        assert harness.provider.get_calls == harness.settings.running_max_attempts
        assert harness.transport.started == []
        assert "did not reach RUNNING" in harness.tracker.latest(tracking_id).message

    def test_create_failure_is_fatal(self):
        provider = FakeCloudProvider(create_error=ProviderError("Quota 'CPUS' exceeded", status_code=403))
        harness = Harness(provider=provider)
        tracking_id, ok = harness.provision(make_request())

        assert not ok
        assert stages(harness, tracking_id) == [Stage.PREPARING, Stage.CREATING, Stage.ERROR]
        error = harness.tracker.latest(tracking_id)
        assert "Quota 'CPUS' exceeded" in error.message
        assert harness.instances.instance_ids == {}

    def test_instance_deleted_during_boot(self):
        provider = FakeCloudProvider(("STAGING", InstanceNotFoundError("gone", status_code=404)))
        harness = Harness(provider=provider)
        tracking_id, ok = harness.provision(make_request())

        assert not ok
        assert stages(harness, tracking_id)[-1] is Stage.ERROR
        assert harness.provider.get_calls == 2


class TestAdvisoryFailures:
    def test_ssh_probe_exhaustion_still_completes(self):
        harness = Harness(connections=ConnectionRecorder(failures=100))
        tracking_id, ok = harness.provision(make_request(boot_script="echo booted"))

        assert ok
        assert len(harness.connections.calls) == harness.settings.ssh_max_attempts
        warnings = messages(harness, tracking_id, EventKind.WARNING)
        assert any("unreachable" in message for message in warnings)
        assert stages(harness, tracking_id)[-1] is Stage.COMPLETE
        assert harness.transport.scripts() == ["echo booted"]

    def test_key_registration_failure_still_runs_boot_script(self):
        harness = Harness(
            source_control=FakeSourceControl(error=ProviderError("key is already in use", status_code=422))
        )
        request = make_request(
            repository=RepositoryRequest.parse("octo/hello"),
            boot_script="echo booted",
        )
        tracking_id, ok = harness.provision(request)

        assert ok
        warnings = messages(harness, tracking_id, EventKind.WARNING)
        assert any("register SSH key" in message for message in warnings)
        scripts = harness.transport.scripts()
        assert scripts[-1] == "echo booted"
        assert not any("git clone" in script for script in scripts)
        assert_ordered(stages(harness, tracking_id))
        assert stages(harness, tracking_id)[-1] is Stage.COMPLETE

    def test_unlinked_account_is_a_warning(self):
        harness = Harness(source_control=FakeSourceControl(linked=False))
        tracking_id, ok = harness.provision(make_request(repository=RepositoryRequest.parse("octo/hello")))

        assert ok
        warnings = messages(harness, tracking_id, EventKind.WARNING)
        assert any("not linked" in message for message in warnings)

    def test_missing_public_key_skips_registration_and_clone(self):
        harness = Harness(transport=FakeTransport(setup_factory(keygen_output="ssh-keygen: not found\n")))
        tracking_id, ok = harness.provision(make_request(repository=RepositoryRequest.parse("octo/hello")))

        assert ok
        assert harness.source_control.registered == []
        assert len(harness.transport.scripts()) == 1
        warnings = messages(harness, tracking_id, EventKind.WARNING)
        assert any("No public key" in message for message in warnings)

    def test_failing_boot_script_is_a_warning(self):
        harness = Harness(transport=FakeTransport(setup_factory(boot_exit=2)))
        tracking_id, ok = harness.provision(make_request(boot_script="exit 2"))

        assert ok
        warnings = messages(harness, tracking_id, EventKind.WARNING)
        assert warnings == ["Boot script exit code 2"]
        assert stages(harness, tracking_id)[-1] is Stage.COMPLETE

    def test_no_external_address_skips_ssh_probe(self):
        harness = Harness(provider=FakeCloudProvider(("RUNNING",), address=None))
        tracking_id, ok = harness.provision(make_request())

        assert ok
        assert harness.connections.calls == []
        warnings = messages(harness, tracking_id, EventKind.WARNING)
        assert any("no external IP" in message for message in warnings)


class TestValidation:
    @pytest.mark.parametrize(
        "overrides",
        [
            {"name": "Box_1"},
            {"name": "1box"},
            {"name": "box-"},
            {"name": "b" * 64},
            {"zone": ""},
            {"user_id": ""},
            {"disk_size_gb": 5},
            {"boot_script": "   "},
            {"repository": RepositoryRequest("octo/hello", directory="~/a b")},
            {"repository": RepositoryRequest("not a repo")},
        ],
    )
    def test_invalid_requests_rejected(self, overrides):
        with pytest.raises(ValidationError):
            make_request(**overrides).validate()

    def test_start_rejects_before_tracking(self, harness):
        async def main():
            with pytest.raises(ValidationError):
                harness.orchestrator.start(make_request(name="BAD"))

        asyncio.run(main())
        assert harness.provider.created == []
        assert harness.orchestrator.active == []

    def test_repository_reference_normalized(self):
        parsed = RepositoryRequest.parse("git@github.com:octo/hello.git", branch="", directory="~/src/hello")
        assert parsed.repository == "octo/hello"
        assert parsed.branch is None
        assert parsed.directory == "~/src/hello"
        make_request(repository=parsed).validate()


def test_registered_workflow_stages():
    assert [definition.stage for definition in registry.stages] == [
        Stage.PREPARING,
        Stage.CREATING,
        Stage.CONFIGURING,
        Stage.INSTALLING,
        Stage.FINALIZING,
    ]


def test_configure_without_created_instance_is_fatal():
    stages_without_create = StageRegistry()
    stages_without_create.stage(Stage.PREPARING, message="Preparing VM creation...")(prepare)
    stages_without_create.stage(Stage.CONFIGURING, message="Configuring VM...")(configure)
    harness = Harness(stages=stages_without_create)

    tracking_id, ok = harness.provision(make_request())

    assert not ok
    assert stages(harness, tracking_id)[-1] is Stage.ERROR
    assert "has no instance id" in harness.tracker.latest(tracking_id).message
    assert harness.instances.instance_ids == {}
    assert harness.provider.get_calls == 0
