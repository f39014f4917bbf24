# debforge/rootfs.py
# -*- coding: utf-8 -*-
"""
rootfs.py - assemble the runnable root filesystem for container targets

Steps, in order:
  1. base image: target override, spec override, else the distro default
     (or an mmdebstrap bootstrap when ``rootfs.bootstrap`` is on and no
     custom base is set)
  2. one install step: apt update + install /tmp/pkg/*.deb. The fixture repo
     and its source list are mounted from the worker only when present there.
     Read-only dpkg fixups are mounted over the same step: debug verbosity
     on, the base image's path excludes emptied
  3. post-install symlinks, made by a worker step over the rootfs

A failed install exits with INSTALL_FAILED_EXIT after printing the
diagnostic commands' output. ``RootfsAssembler.solve`` turns that into a
failed InstallOutcome rather than an exception.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import List, Optional, Sequence

from debforge.config import feature_enabled, get_config
from debforge.debroot import shell_quote
from debforge.distro import DistroConfig
from debforge.engine import Client, Reference, SourceOpts, solve_state
from debforge.errors import SolveError
from debforge.graph import (
    SECURITY_INSECURE, Mkfile, RunOption, State, StateOption, add_env, add_mount, identity,
    progress_group, security, shell, workdir,
)
from debforge.logging import get_logger
from debforge.spec import Spec

logger = get_logger("rootfs")

PKG_MOUNT = "/tmp/pkg"
ROOTFS_MOUNT = "/tmp/rootfs"
LOCAL_REPO = "/opt/debforge/repo"

FIXTURE_REPO = "/opt/testrepo"
FIXTURE_SOURCES_LIST = "/etc/apt/sources.list.d/test-debforge-local-repo.list"

DPKG_DEBUG_FILE = "/etc/dpkg/dpkg.cfg.d/99-debforge-debug"
DPKG_EXCLUDES_FILE = "/etc/dpkg/dpkg.cfg.d/excludes"

INSTALL_FAILED_EXIT = 42
DIAGNOSTIC_COMMANDS: Sequence[str] = (
    "ls -lh /etc/apt/sources.list.d",
    f"ls -lh {FIXTURE_REPO}",
    "mount",
)

BASE_DEPS = ("base-files", "base-passwd", "usrmerge")
SYSTEMD_DEPS = ("init-system-helpers", "bash", "systemctl", "dash")

# -----------------------
# Implicit package policy
# -----------------------
@dataclass(frozen=True)
class ImplicitPackagePolicy:
    include_implicit_deps: bool = False
    include_systemd_deps: bool = False

    @classmethod
    def from_config(cls) -> "ImplicitPackagePolicy":
        return cls(
            include_implicit_deps=feature_enabled("include_implicit_deps"),
            include_systemd_deps=feature_enabled("include_systemd_deps"),
        )

    def package_list(self, spec: Spec) -> List[str]:
        pkgs: List[str] = []
        if self.include_implicit_deps:
            pkgs.extend(BASE_DEPS)
        if self.include_systemd_deps and spec.has_systemd_units():
            pkgs.extend(SYSTEMD_DEPS)
        pkgs.append(spec.name)
        return pkgs

# -----------------------
# Install outcome
# -----------------------
@dataclass
class InstallOutcome:
    ok: bool
    ref: Optional[Reference] = None
    diagnostics: str = ""
    exit_code: Optional[int] = None

# -----------------------
# Shared helpers
# -----------------------
def install_script() -> str:
    diag = "; ".join(DIAGNOSTIC_COMMANDS)
    return (f"set -x; apt update && apt install -y {PKG_MOUNT}/*.deb && exit 0; "
            f"{diag}; exit {INSTALL_FAILED_EXIT}")

def worker_has_fixtures(client: Client, worker: State) -> bool:
    """True only when both the fixture repo and its source list exist in the worker."""
    ref = solve_state(client, worker)
    for path in (FIXTURE_REPO, FIXTURE_SOURCES_LIST):
        try:
            ref.stat(path)
        except FileNotFoundError:
            return False
    return True

def apt_worker(worker: State, distro: DistroConfig) -> State:
    return worker.run(
        shell("apt update && apt install -y apt-utils mmdebstrap"),
        add_env("DEBIAN_FRONTEND", "noninteractive"),
        distro.with_mounted_apt_cache(),
        progress_group("Install mmdebstrap"),
    ).root()

def debstrap(worker: State, distro: DistroConfig, packages: Sequence[str], rootfs: Optional[State] = None,
             extra_sources: Sequence[str] = (), opts: Sequence[RunOption] = ()) -> State:
    """
    mmdebstrap ``packages`` into /tmp/rootfs. With ``rootfs`` the packages go
    on top of that existing tree, otherwise a fresh one is created.
    """
    skip = " --skip=check/empty" if rootfs is not None else ""
    sources = " ".join(f"'{s}'" for s in extra_sources)
    cmd = (
        "set -ex; "
        f"mmdebstrap --debug --verbose --variant=essential --mode=chrootless{skip} "
        f"--include={','.join(packages)} {distro.codename} {ROOTFS_MOUNT} /etc/apt/sources.list {sources}".rstrip()
        + f"; rm -rf {ROOTFS_MOUNT}/var/lib/apt {ROOTFS_MOUNT}/var/cache/apt"
    )
    es = apt_worker(worker, distro).run(
        shell(cmd),
        distro.with_mounted_apt_cache(),
        security(SECURITY_INSECURE),
        *opts,
    )
    return es.add_mount(ROOTFS_MOUNT, rootfs if rootfs is not None else State.scratch())

def local_repo(worker: State, pkg: State) -> State:
    """Flat apt repo (Packages index next to the archives) built from ``pkg``."""
    return worker.run(
        shell("set -ex; dpkg-scanpackages . /dev/null > Packages"),
        workdir(LOCAL_REPO),
        progress_group("Index local package repo"),
    ).add_mount(LOCAL_REPO, pkg)

def post_symlinks(worker: State, spec: Spec, target_key: str) -> StateOption:
    post = spec.get_image_post(target_key)
    if post is None or not post.symlinks:
        return identity

    cmds = []
    for old in sorted(post.symlinks):
        new = post.symlinks[old].path
        cmds.append(f"mkdir -p {shell_quote(ROOTFS_MOUNT + os.path.dirname(new))}")
        cmds.append(f"ln -s {shell_quote(old)} {shell_quote(ROOTFS_MOUNT + new)}")

    def apply(in_state: State) -> State:
        return worker.run(
            shell("set -ex; " + "; ".join(cmds)),
            progress_group("Create post-install symlinks"),
        ).add_mount(ROOTFS_MOUNT, in_state)

    return apply

def dpkg_fixup_mounts() -> List[RunOption]:
    """Read-only files mounted over the install step only; the rootfs keeps the base image's own."""
    debug = State.scratch().file(Mkfile("/debug", b"debug=2\n", 0o644), description="dpkg debug config")
    excludes = State.scratch().file(Mkfile("/excludes", b"", 0o644), description="empty dpkg excludes")
    return [
        add_mount(DPKG_DEBUG_FILE, debug, readonly=True, source_path="/debug"),
        add_mount(DPKG_EXCLUDES_FILE, excludes, readonly=True, source_path="/excludes"),
    ]

# -----------------------
# Assembler
# -----------------------
class RootfsAssembler:
    def __init__(self, client: Client, sopt: SourceOpts, distro: DistroConfig, platform: Optional[str] = None,
                 policy: Optional[ImplicitPackagePolicy] = None):
        self.client = client
        self.sopt = sopt
        self.distro = distro
        self.platform = platform
        self.policy = policy or ImplicitPackagePolicy.from_config()

    def base_image(self, spec: Spec, target_key: str) -> State:
        ref = spec.get_base_output_image(target_key) or self.distro.output_image
        return State.image(ref, resolver=self.sopt.resolver, platform=self.platform,
                           description=f"output base {ref}")

    def install_packages(self, base: State, worker: State, pkg: State, with_fixtures: bool) -> State:
        opts = [
            shell(install_script()),
            add_mount(PKG_MOUNT, pkg, readonly=True),
            add_env("DEBIAN_FRONTEND", "noninteractive"),
            self.distro.with_mounted_apt_cache(),
            progress_group("Install built packages"),
            *dpkg_fixup_mounts(),
        ]
        if with_fixtures:
            opts.append(add_mount(FIXTURE_REPO, worker, readonly=True, source_path=FIXTURE_REPO))
            opts.append(add_mount(FIXTURE_SOURCES_LIST, worker, readonly=True, source_path=FIXTURE_SOURCES_LIST))
        return base.run(*opts).root()

    def bootstrap_rootfs(self, worker: State, spec: Spec, pkg: State, with_fixtures: bool = False) -> State:
        repo = local_repo(worker, pkg)
        sources = [f"deb [trusted=yes] file://{LOCAL_REPO} ./"]
        if with_fixtures:
            # mmdebstrap runs in the worker, where the fixture list and repo already exist
            sources.append(FIXTURE_SOURCES_LIST)
        return debstrap(
            worker, self.distro, self.policy.package_list(spec),
            extra_sources=sources,
            opts=(add_mount(LOCAL_REPO, repo, readonly=True), progress_group(f"Bootstrap rootfs for {spec.name}")),
        )

    def assemble(self, worker: State, spec: Spec, pkg: State, target_key: str, with_fixtures: bool = False) -> State:
        custom_base = spec.get_base_output_image(target_key)
        if get_config().get("rootfs.bootstrap", False) and not custom_base:
            logger.info("bootstrapping rootfs for %s with %s", spec.name, ",".join(self.policy.package_list(spec)))
            if with_fixtures:
                logger.info("adding fixture repo %s to the bootstrap sources", FIXTURE_REPO)
            st = self.bootstrap_rootfs(worker, spec, pkg, with_fixtures)
        else:
            st = self.install_packages(self.base_image(spec, target_key), worker, pkg, with_fixtures)
        return st.with_(post_symlinks(worker, spec, target_key))

    def solve(self, state: State) -> InstallOutcome:
        try:
            ref = solve_state(self.client, state)
        except SolveError as e:
            logger.error("rootfs install failed (exit %s)", e.exit_code)
            return InstallOutcome(ok=False, diagnostics=e.diagnostics or str(e), exit_code=e.exit_code)
        return InstallOutcome(ok=True, ref=ref)
