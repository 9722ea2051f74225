from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime

UNNAMED = "Unnamed"


class Ec2DashboardError(Exception):
    """Base class for every error the dashboard reports to the operator."""


class CredentialsError(Ec2DashboardError):
    pass


@dataclass(slots=True, frozen=True)
class Credentials:
    account_id: str
    access_key_id: str
    secret_access_key: str = field(repr=False)

    @classmethod
    def from_form(cls, account_id: str, access_key_id: str, secret_access_key: str) -> Credentials:
        account_id = (account_id or "").strip()
        access_key_id = (access_key_id or "").strip()
        secret_access_key = (secret_access_key or "").strip()
        if not account_id or not access_key_id or not secret_access_key:
            raise CredentialsError("Please fill in all credential fields")
        return cls(
            account_id=account_id,
            access_key_id=access_key_id,
            secret_access_key=secret_access_key,
        )


@dataclass(slots=True, frozen=True)
class InstanceSummary:
    instance_id: str
    name: str
    state: str
    instance_type: str
    private_ip: str | None
    public_ip: str | None
    launch_time: datetime | None
    region: str
    availability_zone: str | None = None

    @property
    def display_name(self) -> str:
        return self.name or UNNAMED


@dataclass(slots=True, frozen=True)
class RegionInstances:
    region: str
    instances: tuple[InstanceSummary, ...] = ()
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass(slots=True, frozen=True)
class LifecycleResult:
    instance_id: str
    region: str
    action: str
    previous_state: str
    current_state: str
