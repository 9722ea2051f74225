from __future__ import annotations

import pytest
from botocore.exceptions import ClientError, NoRegionError

from conftest import LAUNCHED, RUNNING_FILTER, instance_payload
from ec2_dashboard.aws_api import (
    AwsEc2Service,
    InstanceListError,
    LifecycleError,
    RegionDiscoveryError,
    SimulatedEc2Service,
    describe_error,
    scan_regions,
)


class TestListRegions:
    def test_returns_region_names_in_provider_order(self, service, stubbed_session):
        stubbed_session.stub("us-east-1").add_response(
            "describe_regions",
            {"Regions": [{"RegionName": "eu-west-1"}, {"RegionName": "us-east-1"}, {"RegionName": "ap-south-1"}]},
            {},
        )

        assert service.list_regions() == ["eu-west-1", "us-east-1", "ap-south-1"]

    def test_bad_credentials_raise_friendly_error(self, service, stubbed_session):
        stubbed_session.stub("us-east-1").add_client_error(
            "describe_regions",
            service_error_code="AuthFailure",
            service_message="AWS was not able to validate the provided access credentials",
            http_status_code=401,
        )

        with pytest.raises(RegionDiscoveryError) as excinfo:
            service.list_regions()

        assert str(excinfo.value) == "Failed to fetch AWS regions. Please check your credentials."
        assert isinstance(excinfo.value.__cause__, ClientError)


class TestListRunningInstances:
    def test_flattens_reservations_and_reads_descriptor_fields(self, service, stubbed_session):
        stubbed_session.stub("us-east-1").add_response(
            "describe_instances",
            {
                "Reservations": [
                    {"Instances": [instance_payload("i-0002", name="web", public_ip="54.1.2.3")]},
                    {"Instances": [instance_payload("i-0001", private_ip=None)]},
                ]
            },
            RUNNING_FILTER,
        )

        instances = service.list_running_instances("us-east-1")

        assert [instance.instance_id for instance in instances] == ["i-0001", "i-0002"]
        unnamed, web = instances
        assert unnamed.display_name == "Unnamed"
        assert unnamed.private_ip is None
        assert unnamed.public_ip is None
        assert web.name == "web"
        assert web.public_ip == "54.1.2.3"
        assert web.private_ip == "10.0.0.5"
        assert web.instance_type == "t3.micro"
        assert web.launch_time == LAUNCHED
        assert web.region == "us-east-1"
        assert web.state == "running"

    def test_empty_region(self, service, stubbed_session):
        stubbed_session.stub("eu-north-1").add_response("describe_instances", {"Reservations": []}, RUNNING_FILTER)

        assert service.list_running_instances("eu-north-1") == []

    def test_provider_error_carries_region_and_message(self, service, stubbed_session):
        stubbed_session.stub("ap-east-1").add_client_error(
            "describe_instances",
            service_error_code="OptInRequired",
            service_message="You are not subscribed to this service.",
            http_status_code=401,
        )

        with pytest.raises(InstanceListError) as excinfo:
            service.list_running_instances("ap-east-1")

        assert excinfo.value.region == "ap-east-1"
        assert str(excinfo.value) == "You are not subscribed to this service."


def test_scan_skips_failing_region_and_continues(service, stubbed_session):
    stubbed_session.stub("us-east-1").add_response(
        "describe_instances",
        {"Reservations": [{"Instances": [instance_payload("i-east", name="east")]}]},
        RUNNING_FILTER,
    )
    stubbed_session.stub("ap-east-1").add_client_error(
        "describe_instances",
        service_error_code="OptInRequired",
        service_message="You are not subscribed to this service.",
    )
    stubbed_session.stub("eu-west-1").add_response(
        "describe_instances",
        {"Reservations": [{"Instances": [instance_payload("i-west", name="west")]}]},
        RUNNING_FILTER,
    )

    results = service.scan_regions(["us-east-1", "ap-east-1", "eu-west-1"])

    assert [result.region for result in results] == ["us-east-1", "ap-east-1", "eu-west-1"]
    assert [result.ok for result in results] == [True, False, True]
    assert results[1].error == "You are not subscribed to this service."
    assert results[1].instances == ()
    assert results[2].instances[0].instance_id == "i-west"


class TestLifecycle:
    def test_stop_sends_single_instance_id_to_its_region(self, service, stubbed_session):
        stubbed_session.stub("eu-west-1").add_response(
            "stop_instances",
            {
                "StoppingInstances": [
                    {
                        "InstanceId": "i-0001",
                        "PreviousState": {"Code": 16, "Name": "running"},
                        "CurrentState": {"Code": 64, "Name": "stopping"},
                    }
                ]
            },
            {"InstanceIds": ["i-0001"]},
        )

        result = service.stop_instance("i-0001", "eu-west-1")

        assert result.action == "stop"
        assert result.region == "eu-west-1"
        assert (result.previous_state, result.current_state) == ("running", "stopping")

    def test_terminate(self, service, stubbed_session):
        stubbed_session.stub("us-east-1").add_response(
            "terminate_instances",
            {
                "TerminatingInstances": [
                    {
                        "InstanceId": "i-0001",
                        "PreviousState": {"Code": 16, "Name": "running"},
                        "CurrentState": {"Code": 32, "Name": "shutting-down"},
                    }
                ]
            },
            {"InstanceIds": ["i-0001"]},
        )

        result = service.terminate_instance("i-0001", "us-east-1")

        assert result.action == "terminate"
        assert result.current_state == "shutting-down"

    def test_provider_refusal_becomes_lifecycle_error(self, service, stubbed_session):
        stubbed_session.stub("us-east-1").add_client_error(
            "terminate_instances",
            service_error_code="OperationNotPermitted",
            service_message="The instance 'i-0001' may not be terminated.",
            expected_params={"InstanceIds": ["i-0001"]},
        )

        with pytest.raises(LifecycleError) as excinfo:
            service.terminate_instance("i-0001", "us-east-1")

        assert excinfo.value.action == "terminate"
        assert excinfo.value.instance_id == "i-0001"
        assert str(excinfo.value) == "The instance 'i-0001' may not be terminated."

    def test_client_setup_failure_becomes_lifecycle_error(self, credentials):
        class UnconfiguredSession:
            def client(self, service_name, region_name=None):
                raise NoRegionError()

        service = AwsEc2Service(credentials, session=UnconfiguredSession())

        with pytest.raises(LifecycleError) as excinfo:
            service.stop_instance("i-0001", "eu-west-1")

        assert excinfo.value.action == "stop"
        assert isinstance(excinfo.value.__cause__, NoRegionError)


def test_describe_error():
    error = ClientError(
        {"Error": {"Code": "UnauthorizedOperation", "Message": "You are not authorized."}},
        "DescribeInstances",
    )
    assert describe_error(error) == "You are not authorized."
    assert describe_error(ClientError({"Error": {"Code": "Throttling"}}, "StopInstances")) == "Throttling"
    assert describe_error(RuntimeError("boom")) == "boom"


class TestSimulatedEc2Service:
    def test_lists_only_running_instances_per_region(self, simulated):
        assert [instance.name for instance in simulated.list_running_instances("us-east-1")] == [
            "demo-app-01",
            "demo-bastion",
        ]
        assert [instance.instance_id for instance in simulated.list_running_instances("eu-central-1")] == [
            "i-0a1b2c3d4e5f60003"
        ]
        assert simulated.list_running_instances("us-west-2") == []

    def test_stop_drops_instance_from_running_list(self, simulated):
        result = simulated.stop_instance("i-0a1b2c3d4e5f60001", "us-east-1")

        assert (result.previous_state, result.current_state) == ("running", "stopped")
        assert simulated.state_of("i-0a1b2c3d4e5f60001") == "stopped"
        assert [instance.name for instance in simulated.list_running_instances("us-east-1")] == ["demo-app-01"]

    def test_unknown_instance_or_wrong_region(self, simulated):
        with pytest.raises(LifecycleError):
            simulated.terminate_instance("i-missing", "us-east-1")
        with pytest.raises(LifecycleError):
            simulated.terminate_instance("i-0a1b2c3d4e5f60001", "eu-central-1")

    def test_failing_region_is_reported_by_scan(self):
        service = SimulatedEc2Service(failing_regions={"us-west-2"})

        results = scan_regions(service, service.list_regions())

        failed = [result.region for result in results if not result.ok]
        assert failed == ["us-west-2"]
        assert sum(len(result.instances) for result in results) == 3
