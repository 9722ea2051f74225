from __future__ import annotations

import logging
import threading
from collections.abc import Iterable, Sequence
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from typing import Any, Protocol

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from .models import (
    Credentials,
    Ec2DashboardError,
    InstanceSummary,
    LifecycleResult,
    RegionInstances,
)

logger = logging.getLogger(__name__)

DEFAULT_BOOTSTRAP_REGION = "us-east-1"
DEFAULT_INSTANCE_STATES = ("running",)

STOP = "stop"
TERMINATE = "terminate"


class RegionDiscoveryError(Ec2DashboardError):
    pass


class InstanceListError(Ec2DashboardError):
    def __init__(self, region: str, message: str) -> None:
        super().__init__(message)
        self.region = region


class LifecycleError(Ec2DashboardError):
    def __init__(self, action: str, instance_id: str, message: str) -> None:
        super().__init__(message)
        self.action = action
        self.instance_id = instance_id


class Ec2Service(Protocol):
    def list_regions(self) -> list[str]: ...

    def list_running_instances(
        self, region: str, states: Sequence[str] = DEFAULT_INSTANCE_STATES
    ) -> list[InstanceSummary]: ...

    def scan_regions(
        self, regions: Iterable[str], states: Sequence[str] = DEFAULT_INSTANCE_STATES
    ) -> list[RegionInstances]: ...

    def stop_instance(self, instance_id: str, region: str) -> LifecycleResult: ...

    def terminate_instance(self, instance_id: str, region: str) -> LifecycleResult: ...


def describe_error(error: BaseException) -> str:
    if isinstance(error, ClientError):
        details = error.response.get("Error", {})
        return details.get("Message") or details.get("Code") or str(error)
    return str(error)


class AwsEc2Service:
    def __init__(
        self,
        credentials: Credentials,
        bootstrap_region: str = DEFAULT_BOOTSTRAP_REGION,
        session: boto3.Session | None = None,
    ) -> None:
        self.account_id = credentials.account_id
        self.bootstrap_region = bootstrap_region or DEFAULT_BOOTSTRAP_REGION
        self._session = session or boto3.Session(
            aws_access_key_id=credentials.access_key_id,
            aws_secret_access_key=credentials.secret_access_key,
            region_name=self.bootstrap_region,
        )

    def list_regions(self) -> list[str]:
        try:
            response = self._client(self.bootstrap_region).describe_regions()
        except (BotoCoreError, ClientError) as error:
            logger.warning("DescribeRegions failed in %s: %s", self.bootstrap_region, describe_error(error))
            raise RegionDiscoveryError(
                "Failed to fetch AWS regions. Please check your credentials."
            ) from error

        regions = [region["RegionName"] for region in response.get("Regions", [])]
        logger.info("Discovered %d regions", len(regions))
        return regions

    def list_running_instances(
        self, region: str, states: Sequence[str] = DEFAULT_INSTANCE_STATES
    ) -> list[InstanceSummary]:
        filters = [{"Name": "instance-state-name", "Values": list(states)}]
        summaries: list[InstanceSummary] = []
        try:
            paginator = self._client(region).get_paginator("describe_instances")
            for page in paginator.paginate(Filters=filters):
                for reservation in page.get("Reservations", []):
                    for instance in reservation.get("Instances", []):
                        summaries.append(self._to_summary(instance, region))
        except (BotoCoreError, ClientError) as error:
            raise InstanceListError(region, describe_error(error)) from error

        summaries.sort(key=lambda item: (item.display_name.lower(), item.instance_id))
        return summaries

    def scan_regions(
        self, regions: Iterable[str], states: Sequence[str] = DEFAULT_INSTANCE_STATES
    ) -> list[RegionInstances]:
        return scan_regions(self, regions, states)

    def stop_instance(self, instance_id: str, region: str) -> LifecycleResult:
        return self._change_state(STOP, instance_id, region)

    def terminate_instance(self, instance_id: str, region: str) -> LifecycleResult:
        return self._change_state(TERMINATE, instance_id, region)

    def _change_state(self, action: str, instance_id: str, region: str) -> LifecycleResult:
        logger.info("Requesting %s for %s in %s", action, instance_id, region)
        try:
            client = self._client(region)
            if action == STOP:
                response = client.stop_instances(InstanceIds=[instance_id])
                changes = response.get("StoppingInstances", [])
            else:
                response = client.terminate_instances(InstanceIds=[instance_id])
                changes = response.get("TerminatingInstances", [])
        except (BotoCoreError, ClientError) as error:
            logger.warning("%s failed for %s in %s: %s", action, instance_id, region, describe_error(error))
            raise LifecycleError(action, instance_id, describe_error(error)) from error

        change = next((item for item in changes if item.get("InstanceId") == instance_id), {})
        return LifecycleResult(
            instance_id=instance_id,
            region=region,
            action=action,
            previous_state=change.get("PreviousState", {}).get("Name", "unknown"),
            current_state=change.get("CurrentState", {}).get("Name", "unknown"),
        )

    def _client(self, region: str) -> Any:
        return self._session.client("ec2", region_name=region)

    @staticmethod
    def _to_summary(instance: dict[str, Any], region: str) -> InstanceSummary:
        return InstanceSummary(
            instance_id=instance["InstanceId"],
            name=_tag_value(instance.get("Tags", []), "Name"),
            state=instance.get("State", {}).get("Name", "unknown"),
            instance_type=instance.get("InstanceType", "unknown"),
            private_ip=instance.get("PrivateIpAddress"),
            public_ip=instance.get("PublicIpAddress"),
            launch_time=instance.get("LaunchTime"),
            region=region,
            availability_zone=instance.get("Placement", {}).get("AvailabilityZone"),
        )


def scan_regions(
    service: Ec2Service,
    regions: Iterable[str],
    states: Sequence[str] = DEFAULT_INSTANCE_STATES,
) -> list[RegionInstances]:
    """List instances region by region, in order.

    A region whose listing fails is recorded with its error message and the
    scan moves on to the next one.
    """
    results: list[RegionInstances] = []
    for region in regions:
        try:
            instances = service.list_running_instances(region, states)
        except InstanceListError as error:
            logger.warning("Skipping %s: %s", region, error)
            results.append(RegionInstances(region=region, error=str(error)))
            continue
        results.append(RegionInstances(region=region, instances=tuple(instances)))
    return results


class SimulatedEc2Service:
    """In-memory EC2 used by demo mode."""

    def __init__(
        self,
        instances: Iterable[InstanceSummary] | None = None,
        *,
        regions: Sequence[str] | None = None,
        failing_regions: Iterable[str] = (),
        failing_instances: Iterable[str] = (),
    ) -> None:
        seeded = list(instances) if instances is not None else build_mock_instances()
        self._instances = {instance.instance_id: instance for instance in seeded}
        self._regions = list(regions) if regions is not None else _regions_of(seeded)
        self._failing_regions = set(failing_regions)
        self._failing_instances = set(failing_instances)
        self._lock = threading.Lock()
        self.calls: list[tuple[str, str]] = []

    def list_regions(self) -> list[str]:
        self.calls.append(("describe_regions", ""))
        return list(self._regions)

    def list_running_instances(
        self, region: str, states: Sequence[str] = DEFAULT_INSTANCE_STATES
    ) -> list[InstanceSummary]:
        self.calls.append(("describe_instances", region))
        if region in self._failing_regions:
            raise InstanceListError(region, f"You are not authorized to perform this operation in {region}.")
        with self._lock:
            found = [
                instance
                for instance in self._instances.values()
                if instance.region == region and instance.state in states
            ]
        found.sort(key=lambda item: (item.display_name.lower(), item.instance_id))
        return found

    def scan_regions(
        self, regions: Iterable[str], states: Sequence[str] = DEFAULT_INSTANCE_STATES
    ) -> list[RegionInstances]:
        return scan_regions(self, regions, states)

    def stop_instance(self, instance_id: str, region: str) -> LifecycleResult:
        return self._change_state(STOP, instance_id, region, "stopped")

    def terminate_instance(self, instance_id: str, region: str) -> LifecycleResult:
        return self._change_state(TERMINATE, instance_id, region, "terminated")

    def state_of(self, instance_id: str) -> str:
        return self._instances[instance_id].state

    def _change_state(self, action: str, instance_id: str, region: str, new_state: str) -> LifecycleResult:
        self.calls.append((action, instance_id))
        if instance_id in self._failing_instances:
            raise LifecycleError(action, instance_id, f"Simulated failure for {instance_id}.")
        with self._lock:
            instance = self._instances.get(instance_id)
            if instance is None or instance.region != region:
                raise LifecycleError(
                    action, instance_id, f"The instance ID '{instance_id}' does not exist"
                )
            previous_state = instance.state
            self._instances[instance_id] = _replace_state(instance, new_state)
        return LifecycleResult(
            instance_id=instance_id,
            region=region,
            action=action,
            previous_state=previous_state,
            current_state=new_state,
        )


def build_mock_instances(now: datetime | None = None) -> list[InstanceSummary]:
    now = now or datetime.now(timezone.utc).replace(microsecond=0)
    return [
        InstanceSummary(
            instance_id="i-0a1b2c3d4e5f60001",
            name="demo-bastion",
            state="running",
            instance_type="t3.micro",
            private_ip="10.0.1.21",
            public_ip="54.10.10.21",
            launch_time=now - timedelta(days=12, hours=3),
            region="us-east-1",
            availability_zone="us-east-1a",
        ),
        InstanceSummary(
            instance_id="i-0a1b2c3d4e5f60002",
            name="demo-app-01",
            state="running",
            instance_type="t3.small",
            private_ip="10.0.2.34",
            public_ip=None,
            launch_time=now - timedelta(hours=7),
            region="us-east-1",
            availability_zone="us-east-1b",
        ),
        InstanceSummary(
            instance_id="i-0a1b2c3d4e5f60003",
            name="",
            state="running",
            instance_type="m5.large",
            private_ip="172.31.9.4",
            public_ip="3.120.44.8",
            launch_time=now - timedelta(days=2),
            region="eu-central-1",
            availability_zone="eu-central-1a",
        ),
        InstanceSummary(
            instance_id="i-0a1b2c3d4e5f60004",
            name="demo-rabbitmq",
            state="stopped",
            instance_type="t3.medium",
            private_ip="10.0.3.10",
            public_ip=None,
            launch_time=now - timedelta(days=40),
            region="eu-central-1",
            availability_zone="eu-central-1c",
        ),
    ]


def _regions_of(instances: Iterable[InstanceSummary]) -> list[str]:
    regions = ["us-east-1", "us-west-2", "eu-central-1"]
    for instance in instances:
        if instance.region not in regions:
            regions.append(instance.region)
    return regions


def _replace_state(instance: InstanceSummary, state: str) -> InstanceSummary:
    public_ip = instance.public_ip if state == "running" else None
    return replace(instance, state=state, public_ip=public_ip)


def _tag_value(tags: Iterable[dict[str, str]], key: str) -> str:
    for tag in tags:
        if tag.get("Key") == key:
            return tag.get("Value", "")
    return ""
