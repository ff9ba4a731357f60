"""Tests for a single profile attempt.

Tests cover:
- Zone walk routing per classification
- Breaker and state cache updates
- LimitExceeded lookup and polling
- Pre-launch existence check, image lookup, provider verification of cached instances
- Deadline and interruption handling
- Result artifacts
"""

import time
from unittest.mock import MagicMock

import pytest
from tierhunt.attempt import (
    AttemptOutcome,
    AttemptStatus,
    ProvisionAttempt,
    read_outcome,
    write_outcome,
)
from tierhunt.circuit_breaker import CircuitBreaker
from tierhunt.classifier import Classification
from tierhunt.errors import AttemptInterrupted, LockTimeoutError
from tierhunt.metrics import MetricsRecorder
from tierhunt.provisioner import CommandResult, InstanceCheck, ProvisionSpec, Verdict
from tierhunt.state_cache import InstanceStatus, StateCacheManager

AD1, AD2, AD3 = "AD-1", "AD-2", "AD-3"
OCID = "ocid1.instance.oc1..created"


def ok(instance_id=OCID):
    return CommandResult(returncode=0, output=f'{{"id": "{instance_id}"}}', instance_id=instance_id)


def err(classification, output=None):
    return CommandResult(returncode=1, output=output or classification.value, classification=classification)


class FakeCommand:
    """Returns scripted results per zone; the last result for a zone repeats."""

    def __init__(self, results, found=None, image=None, check=None):
        self.results = {zone: list(r) for zone, r in results.items()}
        self.calls = []
        self.found = found
        self.lookups = 0
        self.image = image
        self.check = check
        self.launched_specs = []
        self.verified = []

    def launch(self, spec, zone):
        self.calls.append(zone)
        self.launched_specs.append(spec)
        queue = self.results[zone]
        return queue.pop(0) if len(queue) > 1 else queue[0]

    def find_instance(self, spec):
        self.lookups += 1
        return self.found() if callable(self.found) else self.found

    def lookup_image_id(self, spec):
        return self.image

    def verify_instance(self, spec, instance_id):
        self.verified.append(instance_id)
        return self.check


@pytest.fixture
def spec():
    return ProvisionSpec(
        name="a1-flex",
        shape="VM.Standard.A1.Flex",
        display_name="a1-flex-sg",
        zones=(AD1, AD2, AD3),
        ocpus=4,
        memory_gb=24,
    )


@pytest.fixture
def breaker(store, clock):
    return CircuitBreaker(store, clock=clock)


@pytest.fixture
def cache(tmp_path, clock):
    return StateCacheManager(tmp_path / "state" / "instance-state.json", region="ca-toronto-1", clock=clock)


def make_attempt(spec, command, breaker, cache, **kwargs):
    kwargs.setdefault("sleep", lambda s: None)
    return ProvisionAttempt(spec, command, breaker, cache, **kwargs)


class TestZoneWalk:
    """Tests for zone iteration and routing."""

    def test_created_in_first_zone(self, spec, breaker, cache):
        command = FakeCommand({AD1: [ok()]})
        outcome = make_attempt(spec, command, breaker, cache).run()

        assert outcome.status == AttemptStatus.CREATED
        assert outcome.zone == AD1
        assert outcome.instance_id == OCID
        assert outcome.exit_code == 0
        assert command.calls == [AD1]
        assert cache.get_entry("a1-flex-sg").instance_id == OCID

    def test_capacity_moves_to_next_zone(self, spec, breaker, cache):
        command = FakeCommand({
            AD1: [err(Classification.CAPACITY)],
            AD2: [err(Classification.RATE_LIMIT)],
            AD3: [ok()],
        })
        outcome = make_attempt(spec, command, breaker, cache).run()

        assert outcome.status == AttemptStatus.CREATED
        assert outcome.zone == AD3
        assert command.calls == [AD1, AD2, AD3]
        assert breaker.get_record(AD1).failures == 1
        assert breaker.get_record(AD2).failures == 1
        assert breaker.get_record(AD3) is None

    def test_all_zones_capacity(self, spec, breaker, cache):
        command = FakeCommand({z: [err(Classification.CAPACITY)] for z in spec.zones})
        outcome = make_attempt(spec, command, breaker, cache).run()

        assert outcome.status == AttemptStatus.CAPACITY
        assert outcome.classification == Classification.CAPACITY
        assert outcome.exit_code == 2
        assert cache.should_create("a1-flex-sg")

    def test_success_clears_breaker(self, spec, breaker, cache):
        breaker.record_failure(AD1)
        breaker.record_failure(AD1)
        command = FakeCommand({AD1: [ok()]})
        make_attempt(spec, command, breaker, cache).run()
        assert breaker.get_record(AD1) is None

    def test_open_zones_skipped(self, spec, breaker, cache):
        for _ in range(3):
            breaker.record_failure(AD1)
        command = FakeCommand({AD2: [ok()]})
        outcome = make_attempt(spec, command, breaker, cache).run()
        assert command.calls == [AD2]
        assert outcome.zone == AD2

    def test_no_eligible_zones(self, spec, breaker, cache):
        for zone in spec.zones:
            for _ in range(3):
                breaker.record_failure(zone)
        command = FakeCommand({})
        outcome = make_attempt(spec, command, breaker, cache).run()
        assert outcome.status == AttemptStatus.NO_ZONES
        assert command.calls == []

    def test_cached_instance_skipped(self, spec, breaker, cache):
        cache.record_created("a1-flex-sg", OCID)
        command = FakeCommand({})
        outcome = make_attempt(spec, command, breaker, cache).run()
        assert outcome.status == AttemptStatus.EXISTING
        assert outcome.instance_id == OCID
        assert command.calls == []

    def test_duplicate_is_existing(self, spec, breaker, cache):
        command = FakeCommand({AD1: [err(Classification.DUPLICATE)]})
        outcome = make_attempt(spec, command, breaker, cache).run()
        assert outcome.status == AttemptStatus.EXISTING
        assert outcome.exit_code == 0

    @pytest.mark.parametrize("classification", [
        Classification.AUTH, Classification.CONFIG, Classification.UNKNOWN,
    ])
    def test_fatal_stops(self, spec, breaker, cache, classification):
        command = FakeCommand({AD1: [err(classification)]})
        outcome = make_attempt(spec, command, breaker, cache).run()

        assert outcome.status == AttemptStatus.FAILED
        assert outcome.classification == classification
        assert command.calls == [AD1]
        assert breaker.get_record(AD1) is None


class TestTransient:
    """Tests for transient error handling."""

    def test_retried_then_created(self, spec, breaker, cache):
        command = FakeCommand({AD1: [err(Classification.NETWORK), err(Classification.INTERNAL_ERROR), ok()]})
        sleeps = []
        outcome = make_attempt(spec, command, breaker, cache, base_delay=5, sleep=sleeps.append).run()

        assert outcome.status == AttemptStatus.CREATED
        assert command.calls == [AD1, AD1, AD1]
        assert sleeps == [5.0, 10.0]

    def test_exhausted_everywhere(self, spec, breaker, cache):
        command = FakeCommand({z: [err(Classification.NETWORK)] for z in spec.zones})
        outcome = make_attempt(spec, command, breaker, cache, max_retries=1).run()

        assert outcome.status == AttemptStatus.FAILED
        assert outcome.classification == Classification.NETWORK
        assert outcome.exit_code == 4
        assert len(command.calls) == 6
        assert breaker.get_record(AD1).failures == 1

    def test_transient_then_capacity_is_failure(self, spec, breaker, cache):
        """An exhausted transient zone outranks plain capacity."""
        command = FakeCommand({
            AD1: [err(Classification.INTERNAL_ERROR)],
            AD2: [err(Classification.CAPACITY)],
            AD3: [err(Classification.CAPACITY)],
        })
        outcome = make_attempt(spec, command, breaker, cache, max_retries=0).run()
        assert outcome.status == AttemptStatus.FAILED
        assert outcome.classification == Classification.INTERNAL_ERROR


class TestLimitExceeded:
    """Tests for LimitExceeded handling."""

    def test_found_despite_error(self, spec, breaker, cache):
        command = FakeCommand({AD1: [err(Classification.LIMIT_EXCEEDED)]}, found=OCID)
        outcome = make_attempt(spec, command, breaker, cache).run()

        assert outcome.status == AttemptStatus.CREATED
        assert outcome.instance_id == OCID
        assert cache.get_entry("a1-flex-sg").instance_id == OCID

    def test_not_found(self, spec, breaker, cache):
        command = FakeCommand({z: [err(Classification.LIMIT_EXCEEDED)] for z in spec.zones})
        outcome = make_attempt(spec, command, breaker, cache).run()

        assert outcome.status == AttemptStatus.CAPACITY
        assert outcome.classification == Classification.LIMIT_EXCEEDED
        assert command.lookups == 3
        assert breaker.records() == []

    def test_polls_until_found(self, spec, breaker, cache):
        answers = [None, None, OCID]
        command = FakeCommand({AD1: [err(Classification.LIMIT_EXCEEDED)]}, found=lambda: answers.pop(0))
        sleeps = []
        outcome = make_attempt(
            spec, command, breaker, cache, limit_exceeded_checks=3, limit_exceeded_delay=2, sleep=sleeps.append
        ).run()

        assert outcome.status == AttemptStatus.CREATED
        assert outcome.instance_id == OCID
        assert command.lookups == 3
        assert sleeps == [2, 2]
        assert command.calls == [AD1]

    def test_polling_bounded_by_deadline(self, spec, breaker, cache):
        command = FakeCommand({z: [err(Classification.LIMIT_EXCEEDED)] for z in spec.zones})
        sleeps = []
        outcome = make_attempt(
            spec, command, breaker, cache,
            limit_exceeded_checks=3, limit_exceeded_delay=5, sleep=sleeps.append,
            deadline=time.monotonic() + 2,
        ).run()

        assert outcome.status == AttemptStatus.CAPACITY
        assert command.lookups == 3
        assert sleeps == []


class TestBudget:
    """Tests for deadline and interruption."""

    def test_past_deadline(self, spec, breaker, cache):
        command = FakeCommand({})
        outcome = make_attempt(spec, command, breaker, cache, deadline=time.monotonic() - 1).run()
        assert outcome.status == AttemptStatus.TIMEOUT
        assert outcome.exit_code == 124
        assert command.calls == []

    def test_interrupted(self, spec, breaker, cache):
        command = MagicMock()
        command.launch.side_effect = AttemptInterrupted("Received signal 15")
        outcome = make_attempt(spec, command, breaker, cache).run()
        assert outcome.status == AttemptStatus.TIMEOUT

    def test_unexpected_exception(self, spec, breaker, cache):
        command = MagicMock()
        command.launch.side_effect = RuntimeError("boom")
        outcome = make_attempt(spec, command, breaker, cache).run()
        assert outcome.status == AttemptStatus.FAILED
        assert outcome.classification == Classification.UNKNOWN
        assert "boom" in outcome.message


class TestSideEffects:
    """Tests for cache and metrics side effects."""

    def test_cache_failure_keeps_created(self, spec, breaker):
        cache = MagicMock()
        cache.should_create.return_value = True
        cache.record_created.side_effect = LockTimeoutError("/tmp/x.lock", 30)
        command = FakeCommand({AD1: [ok()]})
        outcome = make_attempt(spec, command, breaker, cache).run()
        assert outcome.status == AttemptStatus.CREATED

    def test_breaker_failure_keeps_capacity(self, spec, cache):
        breaker = MagicMock()
        breaker.get_available_zones.return_value = list(spec.zones)
        breaker.record_failure.side_effect = LockTimeoutError("/tmp/zone_failures.json.lock", 30)
        command = FakeCommand({z: [err(Classification.CAPACITY)] for z in spec.zones})
        outcome = make_attempt(spec, command, breaker, cache).run()

        assert outcome.status == AttemptStatus.CAPACITY
        assert outcome.exit_code == 2
        assert breaker.record_failure.call_count == 3

    def test_breaker_failure_keeps_created(self, spec, cache):
        breaker = MagicMock()
        breaker.get_available_zones.return_value = list(spec.zones)
        breaker.record_success.side_effect = LockTimeoutError("/tmp/zone_failures.json.lock", 30)
        command = FakeCommand({AD1: [ok()]})
        outcome = make_attempt(spec, command, breaker, cache).run()

        assert outcome.status == AttemptStatus.CREATED
        assert cache.get_entry("a1-flex-sg").instance_id == OCID

    def test_metrics_recorded(self, spec, breaker, cache, tmp_path, clock):
        metrics = MetricsRecorder(tmp_path / "metrics.jsonl", clock=clock)
        command = FakeCommand({AD1: [err(Classification.CAPACITY)], AD2: [ok()]})
        make_attempt(spec, command, breaker, cache, metrics=metrics).run()

        summary = metrics.zone_summary()
        assert summary[AD1].failures_by_type == {"CAPACITY": 1}
        assert summary[AD2].successes == 1


class TestExistingInstance:
    """Tests for the provider-side existence check before launching."""

    def test_found_instance_is_not_launched_again(self, spec, breaker, cache):
        command = FakeCommand({AD1: [ok()]}, found=OCID)
        outcome = make_attempt(spec, command, breaker, cache, check_existing=True).run()

        assert outcome.status == AttemptStatus.EXISTING
        assert outcome.instance_id == OCID
        assert outcome.exit_code == 0
        assert command.calls == []
        assert cache.get_entry("a1-flex-sg").instance_id == OCID

    def test_launches_when_not_found(self, spec, breaker, cache):
        command = FakeCommand({AD1: [ok()]})
        outcome = make_attempt(spec, command, breaker, cache, check_existing=True).run()

        assert outcome.status == AttemptStatus.CREATED
        assert command.lookups == 1
        assert command.calls == [AD1]

    def test_check_disabled_by_default(self, spec, breaker, cache):
        command = FakeCommand({AD1: [ok()]}, found=OCID)
        outcome = make_attempt(spec, command, breaker, cache).run()

        assert outcome.status == AttemptStatus.CREATED
        assert command.lookups == 0


class TestImageLookup:
    """Tests for resolving the newest image when none is configured."""

    def test_found_image_is_launched(self, spec, breaker, cache):
        command = FakeCommand({AD1: [ok()]}, image="ocid1.image.oc1..newest")
        outcome = make_attempt(spec, command, breaker, cache, image_lookup=True).run()

        assert outcome.status == AttemptStatus.CREATED
        assert command.launched_specs[0].image_id == "ocid1.image.oc1..newest"

    def test_no_image_is_config_failure(self, spec, breaker, cache):
        command = FakeCommand({AD1: [ok()]})
        outcome = make_attempt(spec, command, breaker, cache, image_lookup=True).run()

        assert outcome.status == AttemptStatus.FAILED
        assert outcome.classification == Classification.CONFIG
        assert outcome.exit_code == 3
        assert command.calls == []

    def test_configured_image_skips_lookup(self, breaker, cache):
        spec = ProvisionSpec(
            name="e2-micro",
            shape="VM.Standard.E2.1.Micro",
            display_name="e2-micro-sg",
            zones=(AD1,),
            image_id="ocid1.image.oc1..configured",
        )
        command = FakeCommand({AD1: [ok()]})
        outcome = make_attempt(spec, command, breaker, cache, image_lookup=True).run()

        assert outcome.status == AttemptStatus.CREATED
        assert command.launched_specs[0].image_id == "ocid1.image.oc1..configured"


class TestVerifyCached:
    """Tests for confirming a cached instance with the provider."""

    @pytest.fixture(autouse=True)
    def cached(self, cache):
        cache.record_created("a1-flex-sg", OCID)

    def test_matching_instance_recorded_running(self, spec, breaker, cache):
        command = FakeCommand({AD1: [ok()]}, check=InstanceCheck(Verdict.MATCHES, "RUNNING"))
        outcome = make_attempt(spec, command, breaker, cache, verify_existing=True).run()

        assert outcome.status == AttemptStatus.EXISTING
        assert "verified" in outcome.message
        assert command.verified == [OCID]
        assert command.calls == []
        assert cache.get_entry("a1-flex-sg").status == InstanceStatus.RUNNING

    def test_gone_instance_provisioned_again(self, spec, breaker, cache):
        new_id = "ocid1.instance.oc1..replacement"
        command = FakeCommand({AD1: [ok(new_id)]}, check=InstanceCheck(Verdict.GONE, "TERMINATED"))
        outcome = make_attempt(spec, command, breaker, cache, verify_existing=True).run()

        assert outcome.status == AttemptStatus.CREATED
        assert outcome.instance_id == new_id
        entry = cache.get_entry("a1-flex-sg")
        assert entry.instance_id == new_id
        assert entry.status == InstanceStatus.CREATED

    def test_mismatch_kept_as_existing(self, spec, breaker, cache):
        check = InstanceCheck(Verdict.MISMATCH, "RUNNING", "memory-in-gbs 12, expected 24")
        command = FakeCommand({AD1: [ok()]}, check=check)
        outcome = make_attempt(spec, command, breaker, cache, verify_existing=True).run()

        assert outcome.status == AttemptStatus.EXISTING
        assert "memory-in-gbs 12" in outcome.message
        assert command.calls == []
        assert cache.get_entry("a1-flex-sg").status == InstanceStatus.CREATED

    def test_unknown_trusts_cache(self, spec, breaker, cache):
        command = FakeCommand({AD1: [ok()]}, check=InstanceCheck(Verdict.UNKNOWN, detail="timeout"))
        outcome = make_attempt(spec, command, breaker, cache, verify_existing=True).run()

        assert outcome.status == AttemptStatus.EXISTING
        assert outcome.instance_id == OCID
        assert command.calls == []

    def test_verification_disabled_by_default(self, spec, breaker, cache):
        command = FakeCommand({AD1: [ok()]})
        outcome = make_attempt(spec, command, breaker, cache).run()

        assert outcome.status == AttemptStatus.EXISTING
        assert command.verified == []


class TestArtifacts:
    """Tests for result artifacts."""

    def test_round_trip(self, tmp_path):
        outcome = AttemptOutcome(
            profile="a1-flex",
            status=AttemptStatus.FAILED,
            classification=Classification.AUTH,
            zone=AD1,
            message="NotAuthenticated",
            duration_seconds=1.5,
        )
        path = tmp_path / "a1-flex.json"
        write_outcome(path, outcome)
        assert read_outcome(path) == outcome

    def test_missing(self, tmp_path):
        assert read_outcome(tmp_path / "missing.json") is None

    def test_partial(self, tmp_path):
        path = tmp_path / "partial.json"
        path.write_text('{"profile": "a1-fl')
        assert read_outcome(path) is None
