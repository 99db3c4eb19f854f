from __future__ import annotations

import pytest

from config import OperatorConfig
from fakes import LB_CLASS, FakeFly, FakeKube
from reconcile import Reconciler
from tunnel.manager import TunnelManager

OPERATOR_NS = "fly-tunnel-operator-system"


@pytest.fixture
def cfg() -> OperatorConfig:
    return OperatorConfig(
        fly_api_token="test-token",
        fly_org="personal",
        fly_region="syd",
        fly_machine_size="shared-cpu-1x",
        load_balancer_class=LB_CLASS,
        frps_image="snowdreamtech/frps:0.61.1",
        frpc_image="snowdreamtech/frpc:0.61.1",
        operator_namespace=OPERATOR_NS,
    )


@pytest.fixture
def fly() -> FakeFly:
    return FakeFly()


@pytest.fixture
def kube() -> FakeKube:
    return FakeKube()


@pytest.fixture
def manager(fly, kube, cfg) -> TunnelManager:
    return TunnelManager(fly, kube, cfg)


@pytest.fixture
def reconciler(kube, manager) -> Reconciler:
    return Reconciler(kube, manager, LB_CLASS)
