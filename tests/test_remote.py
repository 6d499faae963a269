import pytest

from conftest import FakeProxmox
from proxmox_k3s import remote as remote_module
from proxmox_k3s.errors import CommandTimeout, RemoteCommandFailed
from proxmox_k3s.models import NodeRole, VmHandle
from proxmox_k3s.remote import RemoteExecutor, known_hosts_lines
from proxmox_k3s.shell import CommandResult


def executor(tmp_path, policy="pinned", proxmox=None, sleep=None):
    kwargs = {"sleep": sleep} if sleep else {}
    return RemoteExecutor("ubuntu", tmp_path / "id_test", tmp_path / "kh" / "known_hosts",
                          host_key_policy=policy, proxmox=proxmox, **kwargs)


def handle(identity=101, address="192.168.1.11"):
    node = VmHandle(identity, f"k3s-worker-{identity}", NodeRole.WORKER)
    node.set_address(address)
    return node


@pytest.mark.parametrize("policy, checking, known_hosts", [
    ("pinned", "yes", "kh/known_hosts"),
    ("strict", "yes", "kh/known_hosts"),
    ("accept-new", "accept-new", "kh/known_hosts"),
    ("off", "no", "/dev/null"),
])
def test_ssh_options_follow_policy(tmp_path, policy, checking, known_hosts):
    cmd = executor(tmp_path, policy).ssh_command("10.0.0.5", "uptime")

    assert f"StrictHostKeyChecking={checking}" in cmd
    assert any(o.startswith("UserKnownHostsFile=") and o.endswith(known_hosts) for o in cmd)
    assert cmd[-2:] == ["ubuntu@10.0.0.5", "uptime"]
    assert "BatchMode=yes" in cmd


def test_known_hosts_lines_skip_noise():
    keys = ("ssh-ed25519 AAAAED root@node\n"
            "ecdsa-sha2-nistp256 AAAAEC root@node\n"
            "cat: /etc/ssh/ssh_host_dsa_key.pub: No such file\n")

    assert known_hosts_lines("10.0.0.5", keys) == [
        "10.0.0.5 ssh-ed25519 AAAAED",
        "10.0.0.5 ecdsa-sha2-nistp256 AAAAEC",
    ]


@pytest.mark.asyncio
async def test_trust_pins_keys_once(tmp_path):
    proxmox = FakeProxmox()
    remote = executor(tmp_path, proxmox=proxmox)
    node = handle()

    await remote.trust(node)
    await remote.trust(node)

    content = (tmp_path / "kh" / "known_hosts").read_text()
    assert content == "192.168.1.11 ssh-ed25519 AAAAC3NzaKEY101\n"
    assert len(proxmox.ops("guest_exec")) == 1


@pytest.mark.asyncio
async def test_trust_is_skipped_for_other_policies(tmp_path):
    proxmox = FakeProxmox()

    await executor(tmp_path, "accept-new", proxmox=proxmox).trust(handle())

    assert proxmox.calls == []
    assert not (tmp_path / "kh" / "known_hosts").exists()


@pytest.mark.asyncio
async def test_trust_without_hypervisor_fails(tmp_path):
    with pytest.raises(RemoteCommandFailed, match="host key pinning"):
        await executor(tmp_path).trust(handle())


@pytest.mark.asyncio
async def test_non_zero_exit_raises(tmp_path, monkeypatch):
    async def fake_run(cmd, timeout=300, input=None, description=""):
        return CommandResult(1, "", "curl: (6) Could not resolve host")

    monkeypatch.setattr(remote_module, "run_command", fake_run)

    with pytest.raises(RemoteCommandFailed) as excinfo:
        await executor(tmp_path).run("10.0.0.5", "curl https://get.k3s.io", description="install")

    assert excinfo.value.returncode == 1
    assert "Could not resolve host" in str(excinfo.value)


@pytest.mark.asyncio
async def test_unchecked_failure_is_returned(tmp_path, monkeypatch):
    async def fake_run(cmd, timeout=300, input=None, description=""):
        return CommandResult(1, "", "not ready")

    monkeypatch.setattr(remote_module, "run_command", fake_run)

    result = await executor(tmp_path).run("10.0.0.5", "true", check=False)

    assert not result.ok


@pytest.mark.asyncio
async def test_timeout_becomes_remote_failure(tmp_path, monkeypatch):
    async def fake_run(cmd, timeout=300, input=None, description=""):
        raise CommandTimeout("install timed out after 600s")

    monkeypatch.setattr(remote_module, "run_command", fake_run)

    with pytest.raises(RemoteCommandFailed, match="timed out"):
        await executor(tmp_path).run("10.0.0.5", "sleep 9999")


@pytest.mark.asyncio
async def test_wait_until_reachable_retries(tmp_path, monkeypatch, fake_sleep):
    replies = [CommandResult(255, "", "Connection refused")] * 2 + [CommandResult(0, "", "")]

    async def fake_run(cmd, timeout=300, input=None, description=""):
        return replies.pop(0)

    monkeypatch.setattr(remote_module, "run_command", fake_run)
    remote = executor(tmp_path, proxmox=FakeProxmox(), sleep=fake_sleep)

    await remote.wait_until_reachable(handle(), attempts=5, interval=2.0)

    assert fake_sleep.calls == [2.0, 2.0]


@pytest.mark.asyncio
async def test_wait_until_reachable_gives_up(tmp_path, monkeypatch, fake_sleep):
    async def fake_run(cmd, timeout=300, input=None, description=""):
        return CommandResult(255, "", "Connection refused")

    monkeypatch.setattr(remote_module, "run_command", fake_run)
    remote = executor(tmp_path, "off", sleep=fake_sleep)

    with pytest.raises(RemoteCommandFailed, match="Connection refused"):
        await remote.wait_until_reachable(handle(), attempts=3, interval=1.0)

    assert fake_sleep.calls == [1.0, 1.0]


@pytest.mark.parametrize("policy", ["pinned", "accept-new"])
def test_reset_drops_entries_from_earlier_runs(tmp_path, policy):
    remote = executor(tmp_path, policy)
    known_hosts = tmp_path / "kh" / "known_hosts"
    known_hosts.parent.mkdir()
    known_hosts.write_text("192.168.1.11 ssh-ed25519 AAAAOLDKEY\n")

    remote.reset_known_hosts()

    assert known_hosts.read_text() == ""


def test_reset_keeps_operator_file_under_strict(tmp_path):
    known_hosts = tmp_path / "kh" / "known_hosts"
    known_hosts.parent.mkdir()
    known_hosts.write_text("192.168.1.11 ssh-ed25519 AAAAOPERATOR\n")

    executor(tmp_path, "strict").reset_known_hosts()

    assert known_hosts.read_text() == "192.168.1.11 ssh-ed25519 AAAAOPERATOR\n"


@pytest.mark.asyncio
async def test_second_run_pins_only_its_own_keys(tmp_path):
    first = executor(tmp_path, proxmox=FakeProxmox())
    first.reset_known_hosts()
    await first.trust(handle(identity=101, address="192.168.1.11"))

    second = executor(tmp_path, proxmox=FakeProxmox())
    second.reset_known_hosts()
    await second.trust(handle(identity=205, address="192.168.1.11"))

    content = (tmp_path / "kh" / "known_hosts").read_text()
    assert content == "192.168.1.11 ssh-ed25519 AAAAC3NzaKEY205\n"
