import pytest

from debforge.distro import JAMMY, FOCAL, get_distro, with_mounted_apt_cache
from debforge import config as config_mod
from debforge.engine import SourceOpts
from debforge.errors import ConfigError, ResolutionError
from debforge.graph import MOUNT_CACHE, ExecOp, SourceOp, State, shell
from debforge.worker import BootstrapStrategy, NamedContextStrategy, WorkerResolver, base_packages

from conftest import FakeClient, command


def test_default_image_context_wins():
    override = State.local("my-image")
    client = FakeClient(contexts={JAMMY.image_ref: override, JAMMY.context_ref: State.local("other")})
    assert WorkerResolver().resolve(SourceOpts(client), JAMMY) is override
    assert client.context_requests == [JAMMY.image_ref]


def test_named_worker_context_is_second():
    override = State.local("worker")
    client = FakeClient(contexts={"debforge-jammy-worker": override})
    assert WorkerResolver().resolve(SourceOpts(client), JAMMY) is override
    assert client.context_requests == [JAMMY.image_ref, "debforge-jammy-worker"]
    assert client.image_requests == []


def test_bootstrap_fallback_installs_toolchain():
    client = FakeClient(image_configs={JAMMY.image_ref: {"config": {"Env": ["PATH=/usr/sbin:/usr/bin"]}}})
    worker = WorkerResolver().resolve(SourceOpts(client), JAMMY, "linux/amd64")
    op = worker.output.op
    assert isinstance(op, ExecOp)
    assert command(op) == ("apt update && apt install -y aptitude dpkg-dev devscripts equivs fakeroot "
                           "dh-make build-essential dh-apparmor dh-exec debhelper-compat=11")
    assert "PATH=/usr/sbin:/usr/bin" in op.env
    assert "DEBIAN_FRONTEND=noninteractive" in op.env
    caches = {m.dest: m.cache_id for m in op.mounts if m.kind == MOUNT_CACHE}
    assert caches == {"/var/cache/apt": "jammy-debforge-var-cache-apt", "/var/lib/apt": "jammy-debforge-var-lib-apt"}
    base = op.mounts[0].source.op
    assert isinstance(base, SourceOp)
    assert base.identifier == "docker-image://" + JAMMY.image_ref
    assert client.image_requests == [(JAMMY.image_ref, "linux/amd64")]


def test_focal_uses_its_own_names():
    client = FakeClient()
    worker = WorkerResolver().resolve(SourceOpts(client), FOCAL)
    assert client.context_requests == [FOCAL.image_ref, "debforge-focal-worker"]
    caches = [m.cache_id for m in worker.output.op.mounts if m.kind == MOUNT_CACHE]
    assert caches == ["focal-debforge-var-cache-apt", "focal-debforge-var-lib-apt"]


def test_context_error_aborts():
    class Broken(FakeClient):
        def get_context(self, name):
            raise RuntimeError("context store unavailable")

    with pytest.raises(ResolutionError) as exc:
        WorkerResolver().resolve(SourceOpts(Broken()), JAMMY)
    assert exc.value.stage == "worker"
    assert "context store unavailable" in str(exc.value)


def test_image_metadata_error_aborts():
    class Broken(FakeClient):
        def resolve_image_config(self, ref, platform=None):
            raise RuntimeError("manifest unknown")

    with pytest.raises(ResolutionError) as exc:
        WorkerResolver().resolve(SourceOpts(Broken()), JAMMY)
    assert "manifest unknown" in str(exc.value)


def test_strategies_in_isolation():
    client = FakeClient(contexts={"debforge-jammy-worker": State.local("w")})
    sopt = SourceOpts(client)
    assert NamedContextStrategy("image_ref").resolve(sopt, JAMMY) is None
    assert NamedContextStrategy("context_ref").resolve(sopt, JAMMY) is not None
    assert BootstrapStrategy().command(JAMMY).endswith("debhelper-compat=11")


def test_no_strategy_result_is_an_error():
    client = FakeClient()
    with pytest.raises(ResolutionError):
        WorkerResolver([NamedContextStrategy("context_ref")]).resolve(SourceOpts(client), JAMMY)


def test_base_packages_list():
    assert base_packages(JAMMY)[0] == "aptitude"
    assert "equivs" in base_packages(JAMMY)


def test_apt_cache_mounts_are_locked():
    op = State.image("x").run(with_mounted_apt_cache("p"), shell("true")).root().output.op
    assert all(m.sharing == "locked" for m in op.mounts if m.kind == MOUNT_CACHE)


def test_distro_registry_from_config():
    config_mod.from_dict({"distros": {"noble": {"image_ref": "example/ubuntu:noble", "version_id": "ubuntu24.04",
                                                "debhelper_compat": "13"}}})
    noble = get_distro("noble")
    assert noble.context_ref == "debforge-noble-worker"
    assert noble.version_id == "ubuntu24.04"
    assert noble.builder_packages[-1] == "debhelper-compat=13"
    assert get_distro("jammy") == JAMMY
    with pytest.raises(ConfigError):
        get_distro("bullseye")
