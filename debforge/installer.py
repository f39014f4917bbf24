# debforge/installer.py
# -*- coding: utf-8 -*-
"""
Constraint-preserving package installation.

Asked to install a package, apt's solver prefers the newest candidate of
every dependency and gives up when that newest version conflicts with a pin,
even though an older, compatible version is available. The install is
therefore done in two phases:

  1. force-install the package archive itself, ignoring its dependencies
  2. run a solver fix-broken pass told to reject any solution that removes
     that package

The solver then has to satisfy the package's declared constraints, pinning
dependencies to older versions where needed.

Build dependencies use this through an intermediate ``<name>-deps`` package
whose runtime dependencies are the spec's build dependencies.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Optional

from debforge.distro import DistroConfig
from debforge.errors import ForgeError, PackagingError, wrap
from debforge.graph import RunOption, State, StateOption, add_env, add_mount, identity, progress_group, run_options, shell
from debforge.logging import get_logger
from debforge.spec import Spec

if TYPE_CHECKING:
    from debforge.packager import PackageBuilder

logger = get_logger("installer")

DEPS_MOUNT = "/tmp/debforge/internal/build/deps"


class ConstraintPreservingInstaller(ABC):
    """Backend-neutral two-phase install: force the pinned unit in, then reconcile."""

    @abstractmethod
    def force_install(self, pkg_path: str) -> str:
        """Shell command installing ``pkg_path`` without resolving its dependencies."""

    @abstractmethod
    def reconcile(self, pkg_name: str) -> str:
        """Shell command fixing the broken install while keeping ``pkg_name``."""

    def install_command(self, pkg_path: str, pkg_name: str) -> str:
        return f"set -ex; {self.force_install(pkg_path)}; {self.reconcile(pkg_name)}"

    @abstractmethod
    def as_run_option(self, pkg_path: str, pkg_name: str) -> RunOption:
        """Run option carrying the install command plus whatever mounts the backend needs."""


class AptConstraintInstaller(ConstraintPreservingInstaller):
    def __init__(self, distro: DistroConfig):
        self.distro = distro

    def force_install(self, pkg_path: str) -> str:
        return f"dpkg -i --force-depends {pkg_path}"

    def reconcile(self, pkg_name: str) -> str:
        return f'apt update; aptitude install -y -f -o "Aptitude::ProblemResolver::Hints::=reject {pkg_name} :UNINST"'

    def as_run_option(self, pkg_path: str, pkg_name: str) -> RunOption:
        return run_options(
            shell(self.install_command(pkg_path, pkg_name)),
            add_env("DEBIAN_FRONTEND", "noninteractive"),
            self.distro.with_mounted_apt_cache(),
        )


def build_depends(worker: State, spec: Spec, target_key: str, builder: "PackageBuilder",
                  installer: Optional[ConstraintPreservingInstaller] = None) -> StateOption:
    """
    Return a state option installing the build dependencies of ``spec`` for
    ``target_key`` into whatever state it is applied to. Identity when there
    are none.
    """
    meta = spec.build_deps_meta_spec(target_key)
    if meta is None:
        return identity
    installer = installer or AptConstraintInstaller(builder.distro)

    try:
        pkg = builder.build_package(worker, meta, target_key, version_id="",
                                    group="Create intermediate deb for build dependencies")
    except ForgeError as e:
        raise wrap(e, "error creating intermediate package for installing build dependencies",
                   cls=PackagingError, stage="build-deps")
    logger.debug("build deps for %s go through %s", spec.name, meta.name)

    def install(in_state: State) -> State:
        return in_state.run(
            installer.as_run_option(DEPS_MOUNT + "/*.deb", meta.name),
            add_mount(DEPS_MOUNT, pkg, readonly=True),
            progress_group("Install build dependencies"),
        ).root()

    return install
