import base64

import pytest

from debforge.distro import JAMMY
from debforge.errors import InstallError, PackagingError, SolveError, SpecError, TestFailure
from debforge.frontend import Frontend, build, parse_route, routes

from conftest import FakeClient, definition_commands, make_spec

LIBBAR_SPEC = {"dependencies": {"build": {"libbar-dev": ">=2.0"}}}


def _mkfiles(definition, path):
    out = []
    for op in definition.ops:
        for a in op.get("actions", []):
            if a["action"] == "mkfile" and a["path"] == path:
                out.append(base64.b64decode(a["data"]).decode())
    return out


def _fail_on(needle, **kwargs):
    def fail(definition):
        if any(needle in c for c in definition_commands(definition)):
            return SolveError("process did not complete successfully", **kwargs)
        return None
    return fail


def test_routes():
    r = routes()
    assert set(r) >= {"jammy/deb", "jammy/container", "jammy/worker", "focal/deb", "focal/container", "focal/worker"}
    assert r["focal/worker"] == "Build the worker image used for focal builds"


def test_parse_route():
    assert parse_route("jammy/deb") == ("jammy", "deb")
    assert parse_route("jammy") == ("jammy", "container")
    with pytest.raises(SpecError):
        parse_route("jammy/rpm")


def test_deb_end_to_end(client):
    spec = make_spec(**LIBBAR_SPEC)
    art = build(client, spec, "jammy/deb", "linux/amd64")
    assert art.packages == ["foo_1.0-1ubuntu22.04_amd64.deb"]
    assert art.package_ref is art.ref

    definition = client.solved[-1]
    controls = _mkfiles(definition, "/debian/control")
    assert any("Package: foo-deps" in c and "libbar-dev (>= 2.0)" in c for c in controls)
    assert any("Source: foo\n" in c for c in controls)
    commands = definition_commands(definition)
    assert any("reject foo-deps :UNINST" in c for c in commands)
    assert sum("dpkg-buildpackage -b -uc -us" in c for c in commands) == 2


def test_worker_is_resolved_once(client):
    fe = Frontend(client, JAMMY, "linux/amd64")
    fe.handle("container", make_spec(**LIBBAR_SPEC), "jammy")
    assert client.context_requests == [JAMMY.image_ref, JAMMY.context_ref]


def test_arch_from_platform(monkeypatch):
    monkeypatch.setattr("debforge.image._platform.machine", lambda: "aarch64")
    assert Frontend(FakeClient(), JAMMY, "linux/amd64").arch() == "amd64"
    assert Frontend(FakeClient(), JAMMY, "linux/arm64/v8").arch() == "arm64"
    assert Frontend(FakeClient(), JAMMY, "linux").arch() == "arm64"
    assert Frontend(FakeClient(), JAMMY).arch() == "arm64"


def test_container_install_failure_carries_diagnostics():
    client = FakeClient(fail=_fail_on("exit 42", diagnostics="E: Unable to locate package libbar", exit_code=42))
    with pytest.raises(InstallError) as exc:
        build(client, make_spec(), "jammy/container", "linux/amd64")
    assert exc.value.stage == "rootfs"
    assert exc.value.diagnostics == "E: Unable to locate package libbar"


def test_container_success():
    client = FakeClient(image_configs={JAMMY.image_ref: {"config": {"Env": ["PATH=/usr/bin"]}}})
    spec = make_spec(image={"entrypoint": ["/usr/bin/foo"], "env": {"FOO": "1"}})
    art = build(client, spec, "jammy", "linux/arm64")
    assert art.packages == ["foo_1.0-1ubuntu22.04_arm64.deb"]
    assert art.image_config["config"]["Entrypoint"] == ["/usr/bin/foo"]
    assert art.image_config["config"]["Env"] == ["PATH=/usr/bin", "FOO=1"]
    assert art.image_config["architecture"] == "arm64"
    assert any("apt install -y /tmp/pkg/*.deb" in c for c in definition_commands(art.ref.definition))


def test_container_runs_tests_before_image_config():
    client = FakeClient(files={"/exit": b"1\n", "/stdout": b"", "/stderr": b"boom\n"})
    spec = make_spec(tests=[{"name": "smoke", "steps": [{"command": "foo --help"}]}])
    with pytest.raises(TestFailure) as exc:
        build(client, spec, "jammy/container", "linux/amd64")
    assert exc.value.failures == ["smoke: step 0 (foo --help) exited with code 1"]
    assert client.image_requests == [(JAMMY.image_ref, "linux/amd64")] * 2


def test_build_deps_failure_is_wrapped(client, monkeypatch):
    fe = Frontend(client, JAMMY, "linux/amd64")

    def broken(*args, **kwargs):
        raise SpecError("source src: build context 'x' was not provided")

    monkeypatch.setattr(fe.builder, "build_package", broken)
    with pytest.raises(PackagingError) as exc:
        fe.handle("deb", make_spec(**LIBBAR_SPEC), "jammy")
    assert str(exc.value).startswith(
        "error creating deb for build dependencies: error creating intermediate package")
    assert exc.value.stage == "build-deps"


def test_worker_route(client):
    art = build(client, make_spec(), "jammy/worker")
    assert art.packages == []
    assert any(c.startswith("apt update && apt install -y aptitude") for c in definition_commands(art.ref.definition))
