import pytest

from host_recovery.config import (
    ManagementEndpoint, OutletEndpoint, RecoveryConfig, Target, Tunables,
)


class FakeClock:
    """Monotonic clock that only moves when told to"""

    def __init__(self, now: float = 0.0):
        self.now = now
        self.sleeps = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def recovery_config():
    return RecoveryConfig(
        target=Target(address='web01.example.net', ssh_user='root'),
        management=ManagementEndpoint(address='10.0.10.21', username='ADMIN', secret='ipmi-pass'),
        outlet=OutletEndpoint(address='10.0.20.5', cli_username='apc', cli_secret='apc-pass',
                              label='web01', write_secret='private'),
        tunables=Tunables(),
    )
