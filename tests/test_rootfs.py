import pytest

from debforge import config as config_mod
from debforge.distro import JAMMY
from debforge.engine import FileStat, SourceOpts
from debforge.errors import SolveError
from debforge.graph import SECURITY_INSECURE, ExecOp, State, identity, shell
from debforge.rootfs import (
    BASE_DEPS, DPKG_DEBUG_FILE, DPKG_EXCLUDES_FILE, FIXTURE_REPO, FIXTURE_SOURCES_LIST, INSTALL_FAILED_EXIT,
    LOCAL_REPO, ROOTFS_MOUNT, SYSTEMD_DEPS, ImplicitPackagePolicy, RootfsAssembler, dpkg_fixup_mounts, install_script,
    post_symlinks, worker_has_fixtures,
)

from conftest import FakeClient, command, exec_ops, find_exec, find_file, make_spec

WORKER = State.image("example/worker")
PKG = State.image("example/worker").run(shell("build")).add_mount("/tmp/out", State.scratch())

SYSTEMD_SPEC = {"artifacts": {"systemd": {"units": {"foo.service": {}}}}}


def _assembler(client=None, policy=None):
    client = client or FakeClient()
    return RootfsAssembler(client, SourceOpts(client), JAMMY, "linux/amd64", policy)


def test_policy_defaults_off():
    policy = ImplicitPackagePolicy.from_config()
    assert policy == ImplicitPackagePolicy(False, False)
    assert policy.package_list(make_spec(**SYSTEMD_SPEC)) == ["foo"]


def test_policy_implicit_and_systemd():
    config_mod.from_dict({"features": {"include_implicit_deps": True, "include_systemd_deps": True}})
    policy = ImplicitPackagePolicy.from_config()
    assert policy.package_list(make_spec()) == list(BASE_DEPS) + ["foo"]
    assert policy.package_list(make_spec(**SYSTEMD_SPEC)) == list(BASE_DEPS) + list(SYSTEMD_DEPS) + ["foo"]
    only_systemd = ImplicitPackagePolicy(include_systemd_deps=True)
    assert only_systemd.package_list(make_spec(**SYSTEMD_SPEC)) == list(SYSTEMD_DEPS) + ["foo"]
    assert only_systemd.package_list(make_spec(artifacts={"systemd": {"units": {}}})) == ["foo"]


def test_install_script_fails_with_diagnostics():
    script = install_script()
    assert script.startswith("set -x; apt update && apt install -y /tmp/pkg/*.deb && exit 0; ")
    assert "ls -lh /etc/apt/sources.list.d; ls -lh /opt/testrepo; mount" in script
    assert script.endswith(f"exit {INSTALL_FAILED_EXIT}")


def test_assembly_is_deterministic():
    spec = make_spec(image={"post": {"symlinks": {"/usr/bin/foo": {"path": "/usr/local/bin/foo"}}}})
    a = _assembler().assemble(WORKER, spec, PKG, "jammy")
    b = _assembler().assemble(WORKER, spec, PKG, "jammy")
    assert a.marshal().digest == b.marshal().digest
    assert a.digest() == b.digest()


def test_no_fixture_mounts_without_fixtures():
    st = _assembler().assemble(WORKER, make_spec(), PKG, "jammy", with_fixtures=False)
    install = find_exec(st, "apt install -y /tmp/pkg/*.deb")
    dests = [m.dest for m in install.mounts]
    assert FIXTURE_REPO not in dests
    assert FIXTURE_SOURCES_LIST not in dests
    assert "DEBIAN_FRONTEND=noninteractive" in install.env
    pkg_mount = [m for m in install.mounts if m.dest == "/tmp/pkg"][0]
    assert pkg_mount.readonly and pkg_mount.source == PKG.output


def test_fixture_mounts_come_from_worker():
    st = _assembler().assemble(WORKER, make_spec(), PKG, "jammy", with_fixtures=True)
    install = find_exec(st, "apt install -y /tmp/pkg/*.deb")
    fixtures = {m.dest: m for m in install.mounts if m.dest in (FIXTURE_REPO, FIXTURE_SOURCES_LIST)}
    assert set(fixtures) == {FIXTURE_REPO, FIXTURE_SOURCES_LIST}
    for dest, m in fixtures.items():
        assert m.source == WORKER.output
        assert m.selector == dest
        assert m.readonly


def test_worker_has_fixtures():
    both = FakeClient(stats={FIXTURE_REPO: FileStat(FIXTURE_REPO, 0o755, is_dir=True),
                             FIXTURE_SOURCES_LIST: FileStat(FIXTURE_SOURCES_LIST, 0o644)})
    assert worker_has_fixtures(both, WORKER)
    one = FakeClient(stats={FIXTURE_REPO: FileStat(FIXTURE_REPO, 0o755, is_dir=True)})
    assert not worker_has_fixtures(one, WORKER)
    assert not worker_has_fixtures(FakeClient(), WORKER)


def test_empty_symlinks_are_identity():
    spec = make_spec()
    assert post_symlinks(WORKER, spec, "jammy") is identity
    st = _assembler().assemble(WORKER, spec, PKG, "jammy")
    assert isinstance(st.output.op, ExecOp)
    assert "apt install -y /tmp/pkg/*.deb" in command(st.output.op)


def test_symlinks_are_sorted_and_made_over_rootfs():
    spec = make_spec(targets={"jammy": {"image": {"post": {"symlinks": {
        "/usr/bin/zz": {"path": "/opt/zz"},
        "/usr/bin/aa": {"path": "/usr/local/bin/aa"},
    }}}}})
    st = _assembler().assemble(WORKER, spec, PKG, "jammy")
    op = st.output.op
    assert isinstance(op, ExecOp)
    assert command(op) == ("set -ex; mkdir -p /tmp/rootfs/usr/local/bin; ln -s /usr/bin/aa /tmp/rootfs/usr/local/bin/aa; "
                           "mkdir -p /tmp/rootfs/opt; ln -s /usr/bin/zz /tmp/rootfs/opt/zz")
    rootfs = [m for m in op.mounts if m.dest == ROOTFS_MOUNT][0]
    assert rootfs.output == st.output.index
    assert "apt install -y /tmp/pkg/*.deb" in command(rootfs.source.op)
    assert op.mounts[0].source == WORKER.output


def test_symlink_paths_are_shell_quoted():
    spec = make_spec(image={"post": {"symlinks": {"/opt/my app/foo": {"path": "/usr/local/my bin/foo"}}}})
    st = _assembler().assemble(WORKER, spec, PKG, "jammy")
    assert command(st.output.op) == ("set -ex; mkdir -p '/tmp/rootfs/usr/local/my bin'; "
                                     "ln -s '/opt/my app/foo' '/tmp/rootfs/usr/local/my bin/foo'")


def test_dpkg_fixups_are_mounted_over_install_only():
    st = _assembler().assemble(WORKER, make_spec(), PKG, "jammy")
    install = find_exec(st, "apt install -y /tmp/pkg/*.deb")
    fixups = {m.dest: m for m in install.mounts if m.dest in (DPKG_DEBUG_FILE, DPKG_EXCLUDES_FILE)}
    assert set(fixups) == {DPKG_DEBUG_FILE, DPKG_EXCLUDES_FILE}
    for m in fixups.values():
        assert m.readonly
    debug, excludes = fixups[DPKG_DEBUG_FILE], fixups[DPKG_EXCLUDES_FILE]
    assert debug.selector == "/debug"
    assert find_file(debug.source.op, "/debug") == b"debug=2\n"
    assert excludes.selector == "/excludes"
    assert find_file(excludes.source.op, "/excludes") == b""
    # nothing writes them into the rootfs itself
    with pytest.raises(AssertionError):
        find_file(st, DPKG_DEBUG_FILE)


def test_dpkg_fixup_mounts_are_scratch_files():
    es = State.image("base").run(shell("true"), *dpkg_fixup_mounts())
    mounts = {m.dest: m for m in es.op.mounts}
    assert mounts[DPKG_DEBUG_FILE].source.op.base is None
    assert mounts[DPKG_EXCLUDES_FILE].source.op.base is None


def test_base_image_selection():
    client = FakeClient()
    asm = _assembler(client)
    default = asm.base_image(make_spec(), "jammy").output.op
    assert default.identifier == "docker-image://" + JAMMY.image_ref
    custom = asm.base_image(make_spec(image={"base": "example/custom:1"}), "jammy").output.op
    assert custom.identifier == "docker-image://example/custom:1"
    assert ("example/custom:1", "linux/amd64") in client.image_requests


def test_solve_outcomes():
    ok = _assembler().solve(State.image("x"))
    assert ok.ok and ok.ref is not None

    def fail(definition):
        return SolveError("exit code 42", diagnostics="E: Unable to locate package foo", exit_code=INSTALL_FAILED_EXIT)

    bad = _assembler(FakeClient(fail=fail)).solve(State.image("x"))
    assert not bad.ok
    assert bad.ref is None
    assert bad.diagnostics == "E: Unable to locate package foo"
    assert bad.exit_code == INSTALL_FAILED_EXIT


def test_bootstrap_rootfs_when_configured():
    config_mod.from_dict({"rootfs": {"bootstrap": True}, "features": {"include_implicit_deps": True}})
    st = _assembler().assemble(WORKER, make_spec(), PKG, "jammy")
    strap = find_exec(st, "mmdebstrap --debug")
    assert "--include=base-files,base-passwd,usrmerge,foo jammy /tmp/rootfs /etc/apt/sources.list" in command(strap)
    assert f"'deb [trusted=yes] file://{LOCAL_REPO} ./'" in command(strap)
    assert strap.security == SECURITY_INSECURE
    repo = [m for m in strap.mounts if m.dest == LOCAL_REPO][0]
    assert "dpkg-scanpackages" in command(repo.source.op)
    assert not any("apt install -y /tmp/pkg" in command(op) for op in exec_ops(st))
    assert FIXTURE_SOURCES_LIST not in command(strap)


def test_bootstrap_uses_fixture_sources_when_present():
    config_mod.from_dict({"rootfs": {"bootstrap": True}})
    st = _assembler().assemble(WORKER, make_spec(), PKG, "jammy", with_fixtures=True)
    strap = find_exec(st, "mmdebstrap --debug")
    assert command(strap).split("; ")[1].endswith(
        f"'deb [trusted=yes] file://{LOCAL_REPO} ./' '{FIXTURE_SOURCES_LIST}'")


def test_bootstrap_skipped_for_custom_base():
    config_mod.from_dict({"rootfs": {"bootstrap": True}})
    st = _assembler().assemble(WORKER, make_spec(image={"base": "example/custom"}), PKG, "jammy")
    install = find_exec(st, "apt install -y /tmp/pkg/*.deb")
    assert install.mounts[0].source.op.identifier == "docker-image://example/custom"
