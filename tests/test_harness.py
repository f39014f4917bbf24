import pytest

from debforge.distro import JAMMY
from debforge.engine import FileStat, solve_state
from debforge.errors import TestFailure
from debforge.graph import SECURITY_INSECURE, ExecOp, State, identity
from debforge.harness import OUTPUT_MOUNT, TestHarness, check_file, check_output
from debforge.spec import CheckOutput, FileCheck

from conftest import FakeClient, command, definition_commands, find_exec, make_spec

WORKER = State.image("example/worker")
ROOTFS = State.image("example/rootfs")


def _ref(client, state=ROOTFS):
    return solve_state(client, state)


def test_check_output():
    assert check_output("stdout", CheckOutput(), "anything") == []
    chk = CheckOutput(equals="hi\n", contains=("hi",), matches=(r"^h",), starts_with="h", ends_with="\n")
    assert check_output("stdout", chk, "hi\n") == []
    errs = check_output("stdout", CheckOutput(contains=("a", "b"), empty=True), "a")
    assert errs == ["stdout: does not contain 'b'", "stdout: expected empty, got 'a'"]
    assert check_output("stderr", CheckOutput(matches=(r"\d+",)), "none") == ["stderr: does not match '\\\\d+'"]


def test_check_file():
    client = FakeClient(
        files={"/etc/foo.conf": b"key=value\n"},
        stats={
            "/etc/foo.conf": FileStat("/etc/foo.conf", 0o100644, size=10),
            "/var/lib/foo": FileStat("/var/lib/foo", 0o40750, is_dir=True),
        },
    )
    ref = _ref(client)
    assert check_file(ref, "/etc/foo.conf", FileCheck(contains=("key=",), permissions=0o644)) == []
    assert check_file(ref, "/etc/foo.conf", FileCheck(permissions=0o600)) == [
        "/etc/foo.conf: expected permissions 600, got 644"]
    assert check_file(ref, "/etc/foo.conf", FileCheck(is_dir=True)) == ["/etc/foo.conf: expected a directory"]
    assert check_file(ref, "/var/lib/foo", FileCheck(is_dir=True, permissions=0o750)) == []
    assert check_file(ref, "/var/lib/foo", FileCheck(contains=("x",))) == [
        "/var/lib/foo: is a directory, cannot check contents"]
    assert check_file(ref, "/missing", FileCheck(not_exist=True)) == []
    assert check_file(ref, "/missing", FileCheck()) == ["/missing: does not exist"]
    assert check_file(ref, "/etc/foo.conf", FileCheck(not_exist=True)) == ["/etc/foo.conf: exists but should not"]


def test_no_tests_is_a_noop(client):
    ref = _ref(client)
    client.solved.clear()

    def with_deps(st):
        raise AssertionError("test dependencies installed without tests")

    assert TestHarness(client, JAMMY).run_tests(make_spec(), ref, "jammy", with_deps) is ref
    assert client.solved == []


def test_test_deps_identity_without_deps():
    assert TestHarness(FakeClient(), JAMMY).install_test_deps(WORKER, make_spec(), "jammy") is identity


def test_test_deps_bootstrap_onto_rootfs():
    spec = make_spec(dependencies={"test": {"curl": None, "jq": None}})
    opt = TestHarness(FakeClient(), JAMMY).install_test_deps(WORKER, spec, "jammy")
    st = ROOTFS.with_(opt)
    op = st.output.op
    assert isinstance(op, ExecOp)
    assert "--skip=check/empty" in command(op)
    assert "--include=curl,jq" in command(op)
    assert op.security == SECURITY_INSECURE
    rootfs = [m for m in op.mounts if m.dest == "/tmp/rootfs"][0]
    assert rootfs.source == ROOTFS.output
    assert rootfs.output == st.output.index


def test_test_deps_apt_for_custom_base():
    spec = make_spec(image={"base": "example/custom"}, dependencies={"test": {"curl": None}})
    st = ROOTFS.with_(TestHarness(FakeClient(), JAMMY).install_test_deps(WORKER, spec, "jammy"))
    assert command(st.output.op) == (
        "set -ex; apt-get update && apt-get install -y --no-install-recommends curl")
    assert st.output.op.mounts[0].source == ROOTFS.output


def test_step_captures_output():
    client = FakeClient(files={"/exit": b"0\n", "/stdout": b"foo 1.0\n", "/stderr": b""})
    spec = make_spec(tests=[{"name": "version", "steps": [
        {"command": "foo --version", "env": {"LANG": "C"}, "stdout": {"starts_with": "foo 1.0"}}]}])
    ref = _ref(client)
    assert TestHarness(client, JAMMY).run_tests(spec, ref, "jammy", identity) is ref
    assert any("foo --version" in c for d in client.solved for c in definition_commands(d))

    state = TestHarness(client, JAMMY)._run_steps(ROOTFS, spec.get_tests("jammy")[0])[1][0]
    op = find_exec(state, "foo --version")
    assert command(op) == (f"set +e; ( foo --version\n) > {OUTPUT_MOUNT}/stdout 2> {OUTPUT_MOUNT}/stderr; "
                           f"echo $? > {OUTPUT_MOUNT}/exit")
    assert "LANG=C" in op.env


def test_failures_are_collected_across_tests():
    client = FakeClient(files={"/exit": b"3\n", "/stdout": b"hello\n", "/stderr": b""})
    spec = make_spec(
        tests=[{"name": "first", "steps": [{"command": "foo", "stdout": {"contains": "bye"}}]}],
        targets={"jammy": {"tests": [{"name": "second", "steps": [{"command": "bar"}],
                                      "files": {"/etc/foo.conf": {"contains": "x"}}}]}},
    )
    with pytest.raises(TestFailure) as exc:
        TestHarness(client, JAMMY).run_tests(spec, _ref(client), "jammy", identity)
    failures = exc.value.failures
    assert failures == [
        "first: step 0 (foo) exited with code 3",
        "first: step 0 stdout: does not contain 'bye'",
        "second: step 0 (bar) exited with code 3",
        "second: /etc/foo.conf: does not exist",
    ]
    assert exc.value.stage == "test"


def test_steps_chain_on_previous_root():
    spec = make_spec(tests=[{"name": "t", "steps": [{"command": "one"}, {"command": "two"}]}])
    final, outputs = TestHarness(FakeClient(), JAMMY)._run_steps(ROOTFS, spec.tests[0])
    assert len(outputs) == 2
    two = find_exec(final, "two")
    one = find_exec(final, "one")
    assert two.mounts[0].source.op is one
    assert one.mounts[0].source == ROOTFS.output
