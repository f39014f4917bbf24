# debforge/frontend.py
# -*- coding: utf-8 -*-
"""
frontend.py - build targets and the per-distro pipelines behind them

Every registered distro exposes three routes:

  <distro>/deb        the .deb packages for the spec
  <distro>/container  a rootfs with the packages installed, tested, plus
                      the merged image config
  <distro>/worker     the worker image itself

The worker is resolved once per Frontend and reused by every stage.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

from debforge.debroot import deb_filename
from debforge.distro import DistroConfig, distro_keys, get_distro
from debforge.engine import Client, Reference, source_opts_from_client, solve_state
from debforge.errors import ForgeError, InstallError, SpecError, wrap
from debforge.graph import State
from debforge.harness import TestHarness
from debforge.image import build_image_config, default_platform
from debforge.installer import build_depends
from debforge.logging import get_logger
from debforge.packager import PackageBuilder
from debforge.rootfs import ImplicitPackagePolicy, RootfsAssembler, worker_has_fixtures
from debforge.spec import Spec
from debforge.worker import WorkerResolver

logger = get_logger("frontend")

KIND_DEB = "deb"
KIND_CONTAINER = "container"
KIND_WORKER = "worker"
KINDS = (KIND_DEB, KIND_CONTAINER, KIND_WORKER)

ROUTE_DESCRIPTIONS = {
    KIND_DEB: "Build .deb packages",
    KIND_CONTAINER: "Build a container rootfs with the packages installed",
    KIND_WORKER: "Build the worker image used for {distro} builds",
}


@dataclass
class BuildArtifact:
    ref: Reference
    packages: List[str] = field(default_factory=list)
    package_ref: Optional[Reference] = None
    image_config: Optional[Dict[str, Any]] = None


class Frontend:
    def __init__(self, client: Client, distro: DistroConfig, platform: Optional[str] = None,
                 worker_resolver: Optional[WorkerResolver] = None,
                 policy: Optional[ImplicitPackagePolicy] = None):
        self.client = client
        self.distro = distro
        self.platform = platform
        self.sopt = source_opts_from_client(client)
        self.resolver = worker_resolver or WorkerResolver()
        self.builder = PackageBuilder(client, self.sopt, distro, platform)
        self.assembler = RootfsAssembler(client, self.sopt, distro, platform, policy)
        self.harness = TestHarness(client, distro)
        self._worker: Optional[State] = None

    def worker(self) -> State:
        if self._worker is None:
            self._worker = self.resolver.resolve(self.sopt, self.distro, self.platform)
        return self._worker

    def arch(self) -> str:
        # "linux" and "linux/arm64/v8" are both valid platform strings
        arch = (self.platform or "").partition("/")[2].split("/")[0]
        return arch or default_platform().partition("/")[2]

    # --- graph construction ---
    def deb_state(self, spec: Spec, target_key: str) -> Tuple[State, str]:
        """State holding the (possibly signed) .deb files, and the version id used."""
        worker = self.worker()
        version_id = self.builder.detect_version_id(worker)
        try:
            install_deps = build_depends(worker, spec, target_key, self.builder)
        except ForgeError as e:
            raise wrap(e, "error creating deb for build dependencies")
        st = self.builder.build_deb(worker.with_(install_deps), spec, target_key, version_id)
        return st, version_id

    def container_state(self, spec: Spec, target_key: str, pkg: State) -> State:
        worker = self.worker()
        with_fixtures = worker_has_fixtures(self.client, worker)
        if with_fixtures:
            logger.info("worker carries a test fixture repo; mounting it into the rootfs")
        return self.assembler.assemble(worker, spec, pkg, target_key, with_fixtures)

    def plan(self, kind: str, spec: Spec, target_key: str) -> State:
        """Final state for a route without solving it (test steps are not included)."""
        if kind == KIND_WORKER:
            return self.worker()
        pkg, _ = self.deb_state(spec, target_key)
        if kind == KIND_DEB:
            return pkg
        return self.container_state(spec, target_key, pkg)

    # --- handlers ---
    def handle_deb(self, spec: Spec, target_key: str) -> BuildArtifact:
        st, version_id = self.deb_state(spec, target_key)
        ref = solve_state(self.client, st)
        return BuildArtifact(ref=ref, packages=[deb_filename(spec, version_id, self.arch())], package_ref=ref)

    def handle_container(self, spec: Spec, target_key: str) -> BuildArtifact:
        pkg, version_id = self.deb_state(spec, target_key)
        outcome = self.assembler.solve(self.container_state(spec, target_key, pkg))
        if not outcome.ok:
            raise InstallError(f"error installing {spec.name} into the {self.distro.key} rootfs",
                               stage="rootfs", diagnostics=outcome.diagnostics)

        worker = self.worker()
        ref = self.harness.run_tests(spec, outcome.ref, target_key,
                                     self.harness.install_test_deps(worker, spec, target_key))
        base_ref = spec.get_base_output_image(target_key) or self.distro.output_image
        cfg = build_image_config(self.sopt, spec, target_key, base_ref, self.platform)
        return BuildArtifact(ref=ref, packages=[deb_filename(spec, version_id, self.arch())], image_config=cfg)

    def handle_worker(self, spec: Optional[Spec] = None, target_key: str = "") -> BuildArtifact:
        return BuildArtifact(ref=solve_state(self.client, self.worker()))

    def handle(self, kind: str, spec: Spec, target_key: str) -> BuildArtifact:
        handlers: Dict[str, Callable[[Spec, str], BuildArtifact]] = {
            KIND_DEB: self.handle_deb,
            KIND_CONTAINER: self.handle_container,
            KIND_WORKER: self.handle_worker,
        }
        if kind not in handlers:
            raise SpecError(f"unknown build kind {kind!r}")
        logger.info("building %s/%s for %s", self.distro.key, kind, spec.name)
        return handlers[kind](spec, target_key)

# -----------------------
# Routing
# -----------------------
def routes() -> Dict[str, str]:
    """route -> description for every registered distro."""
    out: Dict[str, str] = {}
    for key in distro_keys():
        for kind in KINDS:
            out[f"{key}/{kind}"] = ROUTE_DESCRIPTIONS[kind].format(distro=key)
    return out


def parse_route(route: str) -> Tuple[str, str]:
    distro_key, sep, kind = route.partition("/")
    if not sep:
        kind = KIND_CONTAINER
    if kind not in KINDS:
        raise SpecError(f"unknown target {route!r} (kinds: {', '.join(KINDS)})")
    return distro_key, kind


def get_frontend(client: Client, distro_key: str, platform: Optional[str] = None) -> Frontend:
    return Frontend(client, get_distro(distro_key), platform)


def build(client: Client, spec: Spec, route: str, platform: Optional[str] = None) -> BuildArtifact:
    """Build ``route`` for ``spec``. The distro key doubles as the spec target key."""
    distro_key, kind = parse_route(route)
    return get_frontend(client, distro_key, platform).handle(kind, spec, distro_key)
