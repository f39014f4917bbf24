# debforge/debroot.py
# -*- coding: utf-8 -*-
"""
debroot.py - generate the debian/ packaging tree for a Spec

The tree is returned as a plain mapping of relative path -> (bytes, mode) so
it can be written to disk (``debforge debroot``) or turned into a FileOp
(``as_state``) with identical content either way. Nothing here reads the
clock; changelog dates come from ``build.source_date_epoch``.
"""

from __future__ import annotations

import os
import re
import time
from typing import Dict, List, Optional, Tuple

from debforge.config import get_build_config
from debforge.distro import DEBHELPER_COMPAT, DistroConfig
from debforge.errors import SpecError
from debforge.graph import Mkdir, Mkfile, State
from debforge.spec import VERSION_EXPR_RE, PackageConstraint, Spec

DebFiles = Dict[str, Tuple[bytes, int]]

SCRIPT_DIR = "debian/debforge"
STANDARDS_VERSION = "4.1.4"

_OP_MAP = {"<": "<<", ">": ">>"}

# -----------------------
# Versions and relations
# -----------------------
def deb_version(spec: Spec, version_id: str = "") -> str:
    return f"{spec.version}-{spec.revision}{version_id}"

def deb_filename(spec: Spec, version_id: str = "", arch: str = "amd64") -> str:
    return f"{spec.name}_{deb_version(spec, version_id)}_{arch}.deb"

def format_version_expr(expr: str) -> str:
    """'>=2.0' -> '>= 2.0'; bare versions pin with '='."""
    m = VERSION_EXPR_RE.match(expr)
    if not m:
        raise SpecError(f"invalid version constraint {expr!r}")
    op = m.group(1) or "="
    return f"{_OP_MAP.get(op, op)} {m.group(2)}"

def format_constraint(name: str, constraint: Optional[PackageConstraint]) -> List[str]:
    """
    One control-file relation per version expression, since every
    expression must hold. Arch restrictions are appended to each.
    """
    constraint = constraint or PackageConstraint()
    arch = f" [{' '.join(constraint.arch)}]" if constraint.arch else ""
    if not constraint.version:
        return [name + arch]
    return [f"{name} ({format_version_expr(v)}){arch}" for v in constraint.version]

def format_relations(deps: Dict[str, PackageConstraint]) -> List[str]:
    out: List[str] = []
    for name in sorted(deps):
        out.extend(format_constraint(name, deps[name]))
    return out

# -----------------------
# Individual files
# -----------------------
def maintainer(spec: Spec) -> str:
    who = spec.packager or "debforge"
    if "<" not in who:
        who = f"{who} <noreply@debforge.invalid>"
    return who

def _description(spec: Spec) -> str:
    text = (spec.description or spec.name).strip()
    lines = text.splitlines()
    out = [lines[0]]
    for line in lines[1:]:
        out.append(" " + line if line.strip() else " .")
    return "\n".join(out)

def control(spec: Spec, target_key: str, compat: str = DEBHELPER_COMPAT) -> str:
    build_deps = [f"debhelper-compat (= {compat})"] + format_relations(spec.get_build_deps(target_key))
    depends = ["${misc:Depends}", "${shlibs:Depends}"] + format_relations(spec.get_runtime_deps(target_key))
    src = [
        f"Source: {spec.name}",
        "Section: misc",
        "Priority: optional",
        f"Maintainer: {maintainer(spec)}",
        "Build-Depends: " + ", ".join(build_deps),
        f"Standards-Version: {STANDARDS_VERSION}",
    ]
    if spec.website:
        src.append(f"Homepage: {spec.website}")
    pkg = [
        f"Package: {spec.name}",
        "Architecture: any",
        "Depends: " + ", ".join(depends),
        f"Description: {_description(spec)}",
    ]
    return "\n".join(src) + "\n\n" + "\n".join(pkg) + "\n"

def changelog(spec: Spec, version_id: str = "", distribution: str = "unstable",
              epoch: Optional[int] = None) -> str:
    if epoch is None:
        epoch = int(get_build_config().get("source_date_epoch") or 0)
    date = time.strftime("%a, %d %b %Y %H:%M:%S +0000", time.gmtime(epoch))
    return (
        f"{spec.name} ({deb_version(spec, version_id)}) {distribution}; urgency=medium\n"
        "\n"
        f"  * Version: {spec.version}-{spec.revision}\n"
        "\n"
        f" -- {maintainer(spec)}  {date}\n"
    )

def build_script(spec: Spec) -> str:
    lines = ["#!/usr/bin/env sh", "set -ex", ""]
    for k in sorted(spec.build.env):
        lines.append(f"export {k}={shell_quote(spec.build.env[k])}")
    for step in spec.build.steps:
        exports = "".join(f"export {k}={shell_quote(v)}; " for k, v in sorted(step.env.items()))
        lines.append(f"( {exports}{step.command} )")
    return "\n".join(lines) + "\n"

def install_script(spec: Spec) -> str:
    dest = f"debian/{spec.name}"
    lines = ["#!/usr/bin/env sh", "set -ex", ""]
    for path in sorted(spec.artifacts.binaries):
        cfg = spec.artifacts.binaries[path]
        name = cfg.name or os.path.basename(path)
        sub = f"/{cfg.subpath.strip('/')}" if cfg.subpath else ""
        lines.append(f"install -D -m 0755 {shell_quote(path)} {shell_quote(f'{dest}/usr/bin{sub}/{name}')}")
    systemd = spec.artifacts.systemd
    if systemd is not None:
        for path in sorted(systemd.units):
            name = systemd.units[path].name or os.path.basename(path)
            lines.append(f"install -D -m 0644 {shell_quote(path)} {shell_quote(f'{dest}/lib/systemd/system/{name}')}")
    return "\n".join(lines) + "\n"

def systemd_links(spec: Spec) -> str:
    systemd = spec.artifacts.systemd
    if systemd is None:
        return ""
    out = []
    for path in sorted(systemd.units):
        unit = systemd.units[path]
        if unit.enable:
            name = unit.name or os.path.basename(path)
            out.append(f"lib/systemd/system/{name} etc/systemd/system/multi-user.target.wants/{name}")
    return "\n".join(out) + "\n" if out else ""

def rules(spec: Spec) -> str:
    lines = ["#!/usr/bin/make -f", "", "%:", "\tdh $@", ""]
    if spec.build.steps:
        lines += ["override_dh_auto_build:", f"\t./{SCRIPT_DIR}/build.sh", ""]
    if _has_install(spec):
        lines += ["override_dh_auto_install:", f"\t./{SCRIPT_DIR}/install.sh", ""]
    lines += ["override_dh_auto_test:", ""]
    return "\n".join(lines)

def _has_install(spec: Spec) -> bool:
    systemd = spec.artifacts.systemd
    return bool(spec.artifacts.binaries) or (systemd is not None and not systemd.is_empty())

def shell_quote(s: str) -> str:
    if s and re.match(r"^[A-Za-z0-9_./=:+@%-]+$", s):
        return s
    return "'" + s.replace("'", "'\"'\"'") + "'"

# -----------------------
# Whole tree
# -----------------------
def debroot(spec: Spec, target_key: str, distro: Optional[DistroConfig] = None, version_id: str = "") -> DebFiles:
    compat = distro.debhelper_compat if distro is not None else DEBHELPER_COMPAT
    distribution = distro.codename if distro is not None else "unstable"
    files: DebFiles = {
        "debian/control": (control(spec, target_key, compat).encode("utf-8"), 0o644),
        "debian/changelog": (changelog(spec, version_id, distribution).encode("utf-8"), 0o644),
        "debian/rules": (rules(spec).encode("utf-8"), 0o755),
        "debian/source/format": (b"3.0 (quilt)\n", 0o644),
    }
    if spec.build.steps:
        files[f"{SCRIPT_DIR}/build.sh"] = (build_script(spec).encode("utf-8"), 0o755)
    if _has_install(spec):
        files[f"{SCRIPT_DIR}/install.sh"] = (install_script(spec).encode("utf-8"), 0o755)
    links = systemd_links(spec)
    if links:
        files[f"debian/{spec.name}.links"] = (links.encode("utf-8"), 0o644)
    return files

def as_state(files: DebFiles, base: Optional[State] = None, description: str = "") -> State:
    """FileOp writing the tree; directories first, then files, both sorted."""
    base = base if base is not None else State.scratch()
    dirs = sorted({os.path.dirname(p) for p in files})
    actions = [Mkdir("/" + d, 0o755, True) for d in dirs]
    actions += [Mkfile("/" + p, files[p][0], files[p][1]) for p in sorted(files)]
    return base.file(*actions, description=description)

def write_tree(files: DebFiles, outdir: str) -> List[str]:
    written = []
    for rel in sorted(files):
        data, mode = files[rel]
        path = os.path.join(outdir, rel)
        os.makedirs(os.path.dirname(path), exist_ok=True)
        with open(path, "wb") as fh:
            fh.write(data)
        os.chmod(path, mode)
        written.append(path)
    return written
