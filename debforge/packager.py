# debforge/packager.py
# -*- coding: utf-8 -*-
"""
packager.py - build .deb packages inside the worker

Flow (mirrors a classic fetch -> prepare -> build -> package pipeline, but
every step is a graph node instead of a local subprocess):

  - sources:  named contexts, inline files and http downloads laid out at
              /<source name> in the package tree
  - debroot:  debian/ tree generated from the Spec
  - build:    dpkg-buildpackage -b -uc -us in the worker, package tree at
              /work/pkg, resulting .deb files moved to the /tmp/out mount
  - sign:     optional, see debforge.signing
"""

from __future__ import annotations

import os
from typing import Any, Dict, List, Optional

from debforge import debroot
from debforge.config import get_build_config
from debforge.distro import DistroConfig
from debforge.engine import Client, SourceOpts, solve_state
from debforge.errors import ForgeError, ResolutionError, SpecError
from debforge.graph import Copy, Mkdir, Mkfile, State, add_env, add_mount, progress_group, shell, workdir
from debforge.logging import get_logger
from debforge.signing import maybe_sign
from debforge.spec import Source, Spec

logger = get_logger("packager")

PKG_DIR = "/work/pkg"
OUT_DIR = "/tmp/out"
OS_RELEASE = "/etc/os-release"

# -----------------------
# Release detection
# -----------------------
def parse_os_release(text: str) -> Dict[str, str]:
    out: Dict[str, str] = {}
    for line in text.splitlines():
        line = line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        k, _, v = line.partition("=")
        out[k.strip()] = v.strip().strip('"').strip("'")
    return out

def version_id_from_os_release(text: str) -> str:
    """ID + VERSION_ID, e.g. ubuntu22.04."""
    info = parse_os_release(text)
    if not info.get("ID") or not info.get("VERSION_ID"):
        raise ResolutionError("os-release is missing ID or VERSION_ID", stage="package")
    return info["ID"] + info["VERSION_ID"]

# -----------------------
# Builder
# -----------------------
class PackageBuilder:
    def __init__(self, client: Client, sopt: SourceOpts, distro: DistroConfig, platform: Optional[str] = None):
        self.client = client
        self.sopt = sopt
        self.distro = distro
        self.platform = platform

    def detect_version_id(self, worker: State) -> str:
        if self.distro.version_id:
            return self.distro.version_id
        try:
            ref = solve_state(self.client, worker)
            text = ref.read_file(OS_RELEASE).decode("utf-8", errors="replace")
        except ForgeError as e:
            raise ResolutionError(f"error reading distro version id: {e}", stage="package") from e
        except OSError as e:
            raise ResolutionError(f"error reading {OS_RELEASE} from worker: {e}", stage="package") from e
        vid = version_id_from_os_release(text)
        logger.debug("detected version id %s for %s", vid, self.distro.key)
        return vid

    # --- sources ---
    def _source_actions(self, src: Source) -> List[Any]:
        root = "/" + src.name
        if src.kind == "inline":
            actions: List[Any] = [Mkdir(root, 0o755, True)]
            for fname in sorted(src.files):
                f = src.files[fname]
                actions.append(Mkfile(f"{root}/{fname}", f.contents.encode("utf-8"), f.permissions))
            return actions
        if src.kind == "http":
            filename = os.path.basename(src.url.split("?", 1)[0]) or src.name
            dl = State.http(src.url, digest=src.digest or None, filename=filename)
            return [Mkdir(root, 0o755, True), Copy(dl, "/" + filename, f"{root}/{filename}")]
        ctx = self.sopt.get_context(src.context)
        if ctx is None:
            raise SpecError(f"source {src.name}: build context {src.context!r} was not provided", stage="package")
        return [Copy(ctx, src.path or "/", root)]

    def sources(self, spec: Spec) -> State:
        actions: List[Any] = []
        for name in sorted(spec.sources):
            actions.extend(self._source_actions(spec.sources[name]))
        if not actions:
            return State.scratch()
        return State.scratch().file(*actions, description=f"Prepare sources for {spec.name}")

    def package_tree(self, spec: Spec, target_key: str, version_id: str) -> State:
        files = debroot.debroot(spec, target_key, self.distro, version_id)
        return debroot.as_state(files, base=self.sources(spec), description=f"Generate debian tree for {spec.name}")

    # --- build ---
    def build_package(self, worker: State, spec: Spec, target_key: str, version_id: str = "",
                      group: Optional[str] = None) -> State:
        """Build the .deb files for ``spec``; the returned state holds only the archives."""
        tree = self.package_tree(spec, target_key, version_id)
        epoch = str(get_build_config().get("source_date_epoch") or 0)
        cmd = f"set -ex; dpkg-buildpackage -b -uc -us; mkdir -p {OUT_DIR}; mv ../*.deb {OUT_DIR}/"
        es = worker.run(
            shell(cmd),
            add_mount(PKG_DIR, tree),
            workdir(PKG_DIR),
            add_env("SOURCE_DATE_EPOCH", epoch),
            add_env("DEBIAN_FRONTEND", "noninteractive"),
            progress_group(group or f"Build {spec.name} deb"),
        )
        return es.add_mount(OUT_DIR, State.scratch())

    def build_deb(self, worker: State, spec: Spec, target_key: str, version_id: Optional[str] = None) -> State:
        if version_id is None:
            version_id = self.detect_version_id(worker)
        logger.info("building %s for %s", debroot.deb_filename(spec, version_id), target_key or self.distro.key)
        st = self.build_package(worker, spec, target_key, version_id)
        return maybe_sign(self.sopt, st, spec, target_key, self.platform)
