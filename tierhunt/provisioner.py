"""
Provisioning command boundary.

The orchestrator never talks to the cloud control plane itself. It runs the
provider's CLI (`oci` by default) as a subprocess, captures combined output and
exit status, and hands the text to the classifier.
"""

import json
import logging
import re
import subprocess
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Optional

from tierhunt.classifier import Classification, classify

logger = logging.getLogger(__name__)

DEFAULT_EXECUTABLE = "oci"
DEFAULT_COMMAND_TIMEOUT = 30
DEFAULT_CONNECTION_TIMEOUT = 5
DEFAULT_READ_TIMEOUT = 15
MIN_BOOT_VOLUME_GB = 50
INSTANCE_ID_PATTERN = r'ocid1\.instance[^"\s]*'
ACTIVE_LIFECYCLE_STATES = ("RUNNING", "PROVISIONING", "STARTING")
GONE_LIFECYCLE_STATES = ("TERMINATING", "TERMINATED")
DEFAULT_OPERATING_SYSTEM = "Oracle Linux"
DEFAULT_OS_VERSION = "9"


@dataclass(frozen=True)
class ProvisionSpec:
    """
    What to provision for one resource profile.

    Attributes:
        name: Profile name (e.g. "a1-flex")
        shape: Compute shape
        display_name: Instance display name, also the state cache key
        zones: Candidate availability domains in preference order
        ocpus: OCPUs for flexible shapes
        memory_gb: Memory for flexible shapes
        compartment_id: Target compartment
        subnet_id: Target subnet
        image_id: Boot image
        assign_public_ip: Whether to attach a public IP
        boot_volume_gb: Boot volume size (raised to the 50 GB minimum)
        ssh_key_file: Public key file authorized on the instance
        operating_system: Image OS used when image_id has to be looked up
        os_version: Image OS version used for the lookup
    """
    name: str
    shape: str
    display_name: str
    zones: tuple[str, ...] = field(default_factory=tuple)
    ocpus: Optional[float] = None
    memory_gb: Optional[float] = None
    compartment_id: str = ""
    subnet_id: str = ""
    image_id: str = ""
    assign_public_ip: bool = True
    boot_volume_gb: int = MIN_BOOT_VOLUME_GB
    ssh_key_file: Optional[str] = None
    operating_system: str = DEFAULT_OPERATING_SYSTEM
    os_version: str = DEFAULT_OS_VERSION

    @property
    def is_flex(self) -> bool:
        return self.shape.endswith("Flex")


@dataclass(frozen=True)
class CommandResult:
    """
    Result of one provisioning command.

    classification is None on success.
    """
    returncode: int
    output: str
    instance_id: Optional[str] = None
    classification: Optional[Classification] = None
    duration_ms: float = 0.0

    @property
    def success(self) -> bool:
        return self.classification is None


class Verdict(str, Enum):
    MATCHES = "matches"
    MISMATCH = "mismatch"
    GONE = "gone"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class InstanceCheck:
    """Provider-side view of a recorded instance compared with its spec."""
    verdict: Verdict
    lifecycle_state: Optional[str] = None
    detail: str = ""

    @property
    def running(self) -> bool:
        return self.lifecycle_state == "RUNNING"


class ProvisionCommand:
    """
    Runs the provider CLI to launch and look up instances.

    Args:
        executable: CLI binary
        timeout_seconds: Hard timeout for one command
        connection_timeout: CLI connect timeout
        read_timeout: CLI read timeout
        instance_id_pattern: Regex that extracts the created instance id
        region: Passed as --region when set
    """

    def __init__(
        self,
        executable: str = DEFAULT_EXECUTABLE,
        timeout_seconds: float = DEFAULT_COMMAND_TIMEOUT,
        connection_timeout: int = DEFAULT_CONNECTION_TIMEOUT,
        read_timeout: int = DEFAULT_READ_TIMEOUT,
        instance_id_pattern: str = INSTANCE_ID_PATTERN,
        region: Optional[str] = None,
    ):
        self.executable = executable
        self.timeout_seconds = timeout_seconds
        self.connection_timeout = connection_timeout
        self.read_timeout = read_timeout
        self.instance_id_pattern = re.compile(instance_id_pattern)
        self.region = region

    def _common_args(self) -> list[str]:
        args = [
            "--connection-timeout", str(self.connection_timeout),
            "--read-timeout", str(self.read_timeout),
            "--no-retry",
        ]
        if self.region:
            args += ["--region", self.region]
        return args

    def build_launch_args(self, spec: ProvisionSpec, zone: str) -> list[str]:
        """Argument list for `compute instance launch` in one zone."""
        boot_volume = spec.boot_volume_gb
        if boot_volume < MIN_BOOT_VOLUME_GB:
            logger.warning(f"Boot volume size increased to minimum {MIN_BOOT_VOLUME_GB}GB")
            boot_volume = MIN_BOOT_VOLUME_GB

        args = [
            self.executable,
            "compute", "instance", "launch",
            "--availability-domain", zone,
            "--compartment-id", spec.compartment_id,
            "--shape", spec.shape,
            "--subnet-id", spec.subnet_id,
            "--image-id", spec.image_id,
            "--display-name", spec.display_name,
            "--assign-private-dns-record", "true",
            "--assign-public-ip", "true" if spec.assign_public_ip else "false",
            "--availability-config", json.dumps({"recoveryAction": "RESTORE_INSTANCE"}),
            "--instance-options", json.dumps({"areLegacyImdsEndpointsDisabled": False}),
            "--boot-volume-size-in-gbs", str(boot_volume),
        ]

        if spec.is_flex:
            args += [
                "--shape-config",
                json.dumps({"ocpus": spec.ocpus, "memoryInGBs": spec.memory_gb}),
            ]

        if spec.ssh_key_file:
            args += ["--ssh-authorized-keys-file", str(Path(spec.ssh_key_file).expanduser())]

        return args + self._common_args()

    def _run(self, args: list[str]) -> tuple[int, str, float]:
        """
        Run a CLI command.

        Returns:
            (returncode, combined output, duration in ms). A timeout or missing
            executable is reported through the output text, never raised.
        """
        start = time.monotonic()
        try:
            proc = subprocess.run(
                args,
                capture_output=True,
                text=True,
                timeout=self.timeout_seconds,
            )
            output = (proc.stdout or "") + (proc.stderr or "")
            returncode = proc.returncode
        except subprocess.TimeoutExpired:
            output = f"Command timed out after {self.timeout_seconds}s"
            returncode = 124
        except FileNotFoundError:
            output = f"Provisioning command not found: {args[0]}"
            returncode = 127

        return returncode, output, (time.monotonic() - start) * 1000

    def launch(self, spec: ProvisionSpec, zone: str) -> CommandResult:
        """
        Try to launch an instance in one zone.

        Args:
            spec: What to provision
            zone: Availability domain

        Returns:
            CommandResult; classification None means the instance was created
        """
        logger.info(
            f"Launching {spec.display_name} ({spec.shape}) in {zone}",
            extra={"event": "launch_started", "profile": spec.name, "zone": zone},
        )
        returncode, output, duration_ms = self._run(self.build_launch_args(spec, zone))

        if returncode == 124:
            classification = Classification.NETWORK
            instance_id = None
        elif returncode == 127:
            classification = Classification.CONFIG
            instance_id = None
        elif returncode == 0:
            match = self.instance_id_pattern.search(output)
            instance_id = match.group(0) if match else None
            classification = None if instance_id else Classification.UNKNOWN
            if instance_id is None:
                logger.error(
                    "Launch exited 0 but no instance id found in output",
                    extra={"event": "launch_unparsable", "profile": spec.name, "zone": zone},
                )
        else:
            instance_id = None
            classification = classify(output)

        return CommandResult(
            returncode=returncode,
            output=output,
            instance_id=instance_id,
            classification=classification,
            duration_ms=duration_ms,
        )

    def find_instance(self, spec: ProvisionSpec) -> Optional[str]:
        """
        Look for an active instance with the spec's display name.

        Used after LimitExceeded, which the provider sometimes returns even
        though the instance was created.

        Returns:
            The instance id, or None if not found or the lookup failed
        """
        args = [
            self.executable,
            "compute", "instance", "list",
            "--compartment-id", spec.compartment_id,
            "--display-name", spec.display_name,
            "--output", "json",
        ] + self._common_args()

        data = self._query(args, "Instance lookup", spec.name)
        if not isinstance(data, list):
            return None

        for instance in data:
            if isinstance(instance, dict) and instance.get("lifecycle-state") in ACTIVE_LIFECYCLE_STATES:
                return instance.get("id")
        return None

    def lookup_image_id(self, spec: ProvisionSpec) -> Optional[str]:
        """
        Newest image of the spec's operating system that supports its shape.

        Returns:
            The image id, or None if nothing matched or the lookup failed
        """
        args = [
            self.executable,
            "compute", "image", "list",
            "--compartment-id", spec.compartment_id,
            "--shape", spec.shape,
            "--operating-system", spec.operating_system,
            "--operating-system-version", spec.os_version,
            "--sort-by", "TIMECREATED",
            "--sort-order", "DESC",
            "--limit", "1",
            "--output", "json",
        ] + self._common_args()

        logger.info(
            f"Looking up latest {spec.operating_system} {spec.os_version} image for {spec.shape}",
            extra={"event": "image_lookup", "profile": spec.name},
        )
        data = self._query(args, "Image lookup", spec.name)
        if not data or not isinstance(data, list) or not isinstance(data[0], dict):
            return None
        return data[0].get("id")

    def get_instance(self, instance_id: str) -> Optional[dict]:
        """Instance details from `compute instance get`, or None on failure."""
        args = [
            self.executable,
            "compute", "instance", "get",
            "--instance-id", instance_id,
            "--output", "json",
        ] + self._common_args()

        data = self._query(args, "Instance get")
        return data if isinstance(data, dict) else None

    def verify_instance(self, spec: ProvisionSpec, instance_id: str) -> InstanceCheck:
        """
        Compare a recorded instance's shape, OCPUs and memory with the spec.

        A terminated instance is GONE. A failed lookup is UNKNOWN, so callers
        keep trusting what they recorded.
        """
        instance = self.get_instance(instance_id)
        if instance is None:
            return InstanceCheck(Verdict.UNKNOWN, detail="instance lookup failed")

        state = instance.get("lifecycle-state")
        if state in GONE_LIFECYCLE_STATES:
            return InstanceCheck(Verdict.GONE, state, f"instance is {state.lower()}")

        shape = instance.get("shape")
        if shape != spec.shape:
            return InstanceCheck(Verdict.MISMATCH, state, f"shape {shape}, expected {spec.shape}")

        shape_config = instance.get("shape-config") or {}
        for key, expected in (("ocpus", spec.ocpus), ("memory-in-gbs", spec.memory_gb)):
            actual = shape_config.get(key)
            if expected is None or actual is None:
                continue
            if float(actual) != float(expected):
                return InstanceCheck(Verdict.MISMATCH, state, f"{key} {float(actual):g}, expected {float(expected):g}")

        return InstanceCheck(Verdict.MATCHES, state)

    def _query(self, args: list[str], what: str, profile: Optional[str] = None) -> Any:
        """Run a read-only CLI command and return the `data` member of its JSON output."""
        extra = {"event": "lookup_failed"}
        if profile:
            extra["profile"] = profile

        returncode, output, _ = self._run(args)
        if returncode != 0:
            logger.warning(f"{what} failed ({classify(output).value})", extra=extra)
            return None

        if not output.strip():
            return None

        try:
            return json.loads(output).get("data")
        except (ValueError, AttributeError):
            logger.warning(f"{what} returned unparsable output", extra=extra)
            return None
