from __future__ import annotations

from datetime import datetime, timezone

import boto3
import pytest
from botocore.stub import Stubber

from ec2_dashboard.aws_api import AwsEc2Service, SimulatedEc2Service, build_mock_instances
from ec2_dashboard.models import Credentials

LAUNCHED = datetime(2024, 3, 1, 12, 30, tzinfo=timezone.utc)


class StubbedSession:
    """boto3 session stand-in handing out one stubbed EC2 client per region."""

    def __init__(self) -> None:
        self._session = boto3.Session(
            aws_access_key_id="AKIATESTKEY",
            aws_secret_access_key="test-secret",
            region_name="us-east-1",
        )
        self.clients: dict[str, object] = {}
        self.stubbers: dict[str, Stubber] = {}

    def stub(self, region: str) -> Stubber:
        if region not in self.stubbers:
            client = self._session.client("ec2", region_name=region)
            stubber = Stubber(client)
            stubber.activate()
            self.clients[region] = client
            self.stubbers[region] = stubber
        return self.stubbers[region]

    def client(self, service_name: str, region_name: str | None = None) -> object:
        assert service_name == "ec2"
        return self.clients[region_name]

    def assert_no_pending_responses(self) -> None:
        for stubber in self.stubbers.values():
            stubber.assert_no_pending_responses()


@pytest.fixture
def credentials() -> Credentials:
    return Credentials(account_id="123456789012", access_key_id="AKIATESTKEY", secret_access_key="test-secret")


@pytest.fixture
def stubbed_session():
    session = StubbedSession()
    yield session
    session.assert_no_pending_responses()


@pytest.fixture
def service(credentials, stubbed_session) -> AwsEc2Service:
    return AwsEc2Service(credentials, bootstrap_region="us-east-1", session=stubbed_session)


@pytest.fixture
def simulated() -> SimulatedEc2Service:
    return SimulatedEc2Service(build_mock_instances(now=LAUNCHED))


def instance_payload(
    instance_id: str,
    *,
    name: str | None = None,
    public_ip: str | None = None,
    private_ip: str | None = "10.0.0.5",
    instance_type: str = "t3.micro",
) -> dict:
    payload: dict = {
        "InstanceId": instance_id,
        "InstanceType": instance_type,
        "LaunchTime": LAUNCHED,
        "State": {"Code": 16, "Name": "running"},
        "Placement": {"AvailabilityZone": "us-east-1a"},
    }
    if name is not None:
        payload["Tags"] = [{"Key": "env", "Value": "prod"}, {"Key": "Name", "Value": name}]
    if public_ip is not None:
        payload["PublicIpAddress"] = public_ip
    if private_ip is not None:
        payload["PrivateIpAddress"] = private_ip
    return payload


RUNNING_FILTER = {"Filters": [{"Name": "instance-state-name", "Values": ["running"]}]}
