# debforge/harness.py
# -*- coding: utf-8 -*-
"""
harness.py - run spec tests against a built result

Tests come from the spec and the target (spec tests first). For each test
the steps run in order, each on top of the previous step's root, with
stdout/stderr/exit status captured in a separate output mount. Output and
file checks are then evaluated through the engine reference. Every failing
check of every test is collected before a single TestFailure is raised.
"""

from __future__ import annotations

import re
from typing import List, Tuple

from debforge.distro import DistroConfig
from debforge.engine import Client, Reference, solve_state
from debforge.errors import TestFailure
from debforge.graph import State, StateOption, add_env, identity, progress_group, shell
from debforge.logging import get_logger
from debforge.rootfs import debstrap
from debforge.spec import CheckOutput, FileCheck, Spec, TestSpec

logger = get_logger("harness")

OUTPUT_MOUNT = "/tmp/debforge/test-output"

# -----------------------
# Checks
# -----------------------
def has_output_checks(chk: CheckOutput) -> bool:
    return bool(chk.equals is not None or chk.contains or chk.matches
                or chk.starts_with is not None or chk.ends_with is not None or chk.empty)

def check_output(label: str, chk: CheckOutput, text: str) -> List[str]:
    errs: List[str] = []
    if chk.equals is not None and text != chk.equals:
        errs.append(f"{label}: expected {chk.equals!r}, got {text!r}")
    for want in chk.contains:
        if want not in text:
            errs.append(f"{label}: does not contain {want!r}")
    for pattern in chk.matches:
        if not re.search(pattern, text):
            errs.append(f"{label}: does not match {pattern!r}")
    if chk.starts_with is not None and not text.startswith(chk.starts_with):
        errs.append(f"{label}: does not start with {chk.starts_with!r}")
    if chk.ends_with is not None and not text.endswith(chk.ends_with):
        errs.append(f"{label}: does not end with {chk.ends_with!r}")
    if chk.empty and text != "":
        errs.append(f"{label}: expected empty, got {text!r}")
    return errs

def check_file(ref: Reference, path: str, chk: FileCheck) -> List[str]:
    try:
        st = ref.stat(path)
    except FileNotFoundError:
        if chk.not_exist:
            return []
        return [f"{path}: does not exist"]
    if chk.not_exist:
        return [f"{path}: exists but should not"]

    errs: List[str] = []
    if chk.is_dir and not st.is_dir:
        errs.append(f"{path}: expected a directory")
    if chk.permissions is not None and (st.mode & 0o7777) != chk.permissions:
        errs.append(f"{path}: expected permissions {chk.permissions:o}, got {st.mode & 0o7777:o}")
    if has_output_checks(chk):
        if st.is_dir:
            errs.append(f"{path}: is a directory, cannot check contents")
        else:
            text = ref.read_file(path).decode("utf-8", errors="replace")
            errs.extend(check_output(path, chk, text))
    return errs

# -----------------------
# Harness
# -----------------------
class TestHarness:
    __test__ = False

    def __init__(self, client: Client, distro: DistroConfig):
        self.client = client
        self.distro = distro

    def install_test_deps(self, worker: State, spec: Spec, target_key: str) -> StateOption:
        deps = spec.get_test_deps(target_key)
        if not deps:
            return identity

        if not spec.get_base_output_image(target_key):
            def bootstrap(in_state: State) -> State:
                return debstrap(worker, self.distro, deps, rootfs=in_state,
                                opts=(progress_group("Install test dependencies"),))
            return bootstrap

        cmd = "set -ex; apt-get update && apt-get install -y --no-install-recommends " + " ".join(deps)

        def apt_install(in_state: State) -> State:
            return in_state.run(
                shell(cmd),
                add_env("DEBIAN_FRONTEND", "noninteractive"),
                self.distro.with_mounted_apt_cache(),
                progress_group("Install test dependencies"),
            ).root()
        return apt_install

    def _run_steps(self, state: State, test: TestSpec) -> Tuple[State, List[State]]:
        outputs: List[State] = []
        for i, step in enumerate(test.steps):
            cmd = (f"set +e; ( {step.command}\n) > {OUTPUT_MOUNT}/stdout 2> {OUTPUT_MOUNT}/stderr; "
                   f"echo $? > {OUTPUT_MOUNT}/exit")
            opts = [shell(cmd), progress_group(f"Test {test.name} step {i}")]
            opts += [add_env(k, step.env[k]) for k in sorted(step.env)]
            es = state.run(*opts)
            outputs.append(es.add_mount(OUTPUT_MOUNT, State.scratch()))
            state = es.root()
        return state, outputs

    def check_test(self, state: State, test: TestSpec) -> List[str]:
        final, outputs = self._run_steps(state, test)
        failures: List[str] = []
        for i, (step, out) in enumerate(zip(test.steps, outputs)):
            ref = solve_state(self.client, out)
            code = ref.read_file("/exit").decode("utf-8", errors="replace").strip()
            if code != "0":
                failures.append(f"{test.name}: step {i} ({step.command}) exited with code {code}")
            for stream, chk in (("stdout", step.stdout), ("stderr", step.stderr)):
                if has_output_checks(chk):
                    text = ref.read_file("/" + stream).decode("utf-8", errors="replace")
                    failures.extend(f"{test.name}: step {i} {e}" for e in check_output(stream, chk, text))
        if test.files:
            ref = solve_state(self.client, final)
            for path in sorted(test.files):
                failures.extend(f"{test.name}: {e}" for e in check_file(ref, path, test.files[path]))
        return failures

    def run_tests(self, spec: Spec, ref: Reference, target_key: str, with_deps: StateOption) -> Reference:
        """Return ``ref`` untouched when every test passes; raise TestFailure otherwise."""
        tests = spec.get_tests(target_key)
        if not tests:
            return ref

        state = ref.to_state().with_(with_deps)
        failures: List[str] = []
        for test in tests:
            logger.info("running test %s", test.name)
            failures.extend(self.check_test(state, test))
        if failures:
            for f in failures:
                logger.error("%s", f)
            raise TestFailure(f"{len(failures)} test check(s) failed for {spec.name}", failures=failures)
        logger.info("%d test(s) passed for %s", len(tests), spec.name)
        return ref
