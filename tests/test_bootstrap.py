import asyncio

import pytest

from conftest import FakeRemote
from proxmox_k3s.bootstrap import BootstrapState, ClusterBootstrapper
from proxmox_k3s.errors import BootstrapOrderError, RemoteCommandFailed
from proxmox_k3s.models import ClusterToken

CONTROL = "192.168.1.10"


@pytest.mark.asyncio
async def test_worker_cannot_join_before_control():
    remote = FakeRemote()
    bootstrapper = ClusterBootstrapper(remote)

    with pytest.raises(BootstrapOrderError):
        await bootstrapper.install_worker("192.168.1.11", CONTROL, ClusterToken("K10abc"))

    assert remote.calls == []


def test_complete_requires_control():
    with pytest.raises(BootstrapOrderError):
        ClusterBootstrapper(FakeRemote()).complete()


@pytest.mark.asyncio
async def test_control_install_returns_token():
    remote = FakeRemote(token="K10abc::server:secret")
    bootstrapper = ClusterBootstrapper(remote)

    token = await bootstrapper.install_control(CONTROL)

    assert token.value == "K10abc::server:secret"
    assert "secret" not in repr(token)
    assert bootstrapper.state == BootstrapState.CONTROL_READY
    assert remote.calls == [(CONTROL, "k3s server install"), (CONTROL, "token retrieval")]


@pytest.mark.asyncio
async def test_empty_token_is_an_error():
    bootstrapper = ClusterBootstrapper(FakeRemote(token=""))

    with pytest.raises(RemoteCommandFailed, match="token"):
        await bootstrapper.install_control(CONTROL)

    assert bootstrapper.state == BootstrapState.UNBOOTSTRAPPED


@pytest.mark.asyncio
async def test_control_failure_leaves_cluster_unbootstrapped():
    remote = FakeRemote()
    remote.fail(CONTROL, "k3s server install")
    bootstrapper = ClusterBootstrapper(remote)

    with pytest.raises(RemoteCommandFailed):
        await bootstrapper.install_control(CONTROL)

    assert bootstrapper.state == BootstrapState.UNBOOTSTRAPPED


@pytest.mark.asyncio
async def test_workers_join_after_control_with_token_on_stdin():
    remote = FakeRemote(token="K10abc::server:secret")
    bootstrapper = ClusterBootstrapper(remote)
    workers = ["192.168.1.11", "192.168.1.12"]

    token = await bootstrapper.install_control(CONTROL)
    await asyncio.gather(*(bootstrapper.install_worker(w, CONTROL, token) for w in workers))
    bootstrapper.complete()

    assert remote.calls[:2] == [(CONTROL, "k3s server install"), (CONTROL, "token retrieval")]
    assert sorted(remote.calls[2:]) == [(w, "k3s agent install") for w in workers]
    for worker in workers:
        assert remote.inputs[worker] == "K10abc::server:secret\n"
    assert bootstrapper.state == BootstrapState.CLUSTER_READY


def test_worker_command_carries_url_but_not_token():
    bootstrapper = ClusterBootstrapper(FakeRemote())

    command = bootstrapper.worker_command(CONTROL)

    assert "K3S_URL=https://192.168.1.10:6443" in command
    assert "read -r K3S_TOKEN" in command
    assert "sh -s - agent" in command
    assert "K10abc" not in command


def test_control_command_includes_version_and_server_args():
    bootstrapper = ClusterBootstrapper(
        FakeRemote(), version="v1.30.4+k3s1", server_args=["--write-kubeconfig-mode", "644"],
    )

    command = bootstrapper.control_command()

    assert command.startswith("curl -sfL https://get.k3s.io | ")
    assert "INSTALL_K3S_VERSION=v1.30.4+k3s1" in command
    assert command.endswith("sh -s - server --write-kubeconfig-mode 644")


def test_unpinned_version_has_no_installer_env():
    assert "INSTALL_K3S_VERSION" not in ClusterBootstrapper(FakeRemote()).control_command()
