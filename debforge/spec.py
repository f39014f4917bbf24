# debforge/spec.py
# -*- coding: utf-8 -*-
"""
spec.py - loader, validator and runtime helpers for package spec files

Features:
- Parse YAML (or JSON) spec files into immutable dataclasses
- Dependencies split into build / runtime (name -> constraint) and test (names)
- Per-target overrides (dependencies, image, tests, package_config) with
  fallback to the spec-level value when a target does not override
- Sources: named build contexts, inline files, http downloads
- Image config and post-install symlinks
- Spec tests: ordered steps with stdout/stderr checks, file checks
- Validation with all issues reported at once

Spec files look like:

    name: foo
    version: "1.0"
    revision: "1"
    packager: Foo Maintainers <foo@example.com>
    dependencies:
      build:
        libbar-dev: {version: [">= 2.0"]}
      runtime:
        libbar2:
      test: [curl]
    targets:
      jammy:
        image:
          post:
            symlinks:
              /usr/bin/foo: {path: /usr/local/bin/foo}
"""

from __future__ import annotations

import json
import os
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

import yaml

from debforge.errors import SpecError
from debforge.logging import get_logger

logger = get_logger("spec")

NAME_RE = re.compile(r"^[a-z0-9][a-z0-9+.\-]+$")
# optional relation operator, then a Debian version
VERSION_EXPR_RE = re.compile(r"^\s*(<<|>>|<=|>=|=|<|>)?\s*([0-9A-Za-z][0-9A-Za-z.+~:\-]*)\s*$")

# -----------------------
# Data models
# -----------------------
@dataclass(frozen=True)
class PackageConstraint:
    """Version/arch constraints on one dependency. Empty means "any"."""
    version: Tuple[str, ...] = ()
    arch: Tuple[str, ...] = ()


@dataclass(frozen=True)
class PackageDependencies:
    build: Dict[str, PackageConstraint] = field(default_factory=dict)
    runtime: Dict[str, PackageConstraint] = field(default_factory=dict)
    test: Tuple[str, ...] = ()


@dataclass(frozen=True)
class SymlinkTarget:
    path: str


@dataclass(frozen=True)
class PostInstall:
    symlinks: Dict[str, SymlinkTarget] = field(default_factory=dict)


@dataclass(frozen=True)
class ImageConfig:
    base: str = ""
    entrypoint: Optional[Tuple[str, ...]] = None
    cmd: Optional[Tuple[str, ...]] = None
    env: Tuple[str, ...] = ()
    labels: Dict[str, str] = field(default_factory=dict)
    workdir: str = ""
    user: str = ""
    volumes: Tuple[str, ...] = ()
    stop_signal: str = ""
    post: Optional[PostInstall] = None


@dataclass(frozen=True)
class InlineFile:
    contents: str = ""
    permissions: int = 0o644


@dataclass(frozen=True)
class Source:
    name: str
    kind: str  # context | inline | http
    context: str = ""
    files: Dict[str, InlineFile] = field(default_factory=dict)
    url: str = ""
    digest: str = ""
    path: str = "/"


@dataclass(frozen=True)
class BuildStep:
    command: str
    env: Dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class BuildSteps:
    env: Dict[str, str] = field(default_factory=dict)
    steps: Tuple[BuildStep, ...] = ()


@dataclass(frozen=True)
class ArtifactConfig:
    subpath: str = ""
    name: str = ""


@dataclass(frozen=True)
class SystemdUnit:
    name: str = ""
    enable: bool = False


@dataclass(frozen=True)
class SystemdConfig:
    units: Dict[str, SystemdUnit] = field(default_factory=dict)

    def is_empty(self) -> bool:
        return not self.units


@dataclass(frozen=True)
class Artifacts:
    binaries: Dict[str, ArtifactConfig] = field(default_factory=dict)
    systemd: Optional[SystemdConfig] = None


@dataclass(frozen=True)
class CheckOutput:
    equals: Optional[str] = None
    contains: Tuple[str, ...] = ()
    matches: Tuple[str, ...] = ()
    starts_with: Optional[str] = None
    ends_with: Optional[str] = None
    empty: bool = False

    def is_empty(self) -> bool:
        return self == CheckOutput()


@dataclass(frozen=True)
class FileCheck(CheckOutput):
    not_exist: bool = False
    is_dir: bool = False
    permissions: Optional[int] = None


@dataclass(frozen=True)
class TestStep:
    __test__ = False

    command: str
    env: Dict[str, str] = field(default_factory=dict)
    stdout: CheckOutput = field(default_factory=CheckOutput)
    stderr: CheckOutput = field(default_factory=CheckOutput)


@dataclass(frozen=True)
class TestSpec:
    __test__ = False

    name: str
    steps: Tuple[TestStep, ...] = ()
    files: Dict[str, FileCheck] = field(default_factory=dict)


@dataclass(frozen=True)
class Signer:
    image: str
    args: Tuple[str, ...] = ()
    env: Dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class PackageConfig:
    signer: Optional[Signer] = None


@dataclass(frozen=True)
class Target:
    dependencies: Optional[PackageDependencies] = None
    image: Optional[ImageConfig] = None
    tests: Tuple[TestSpec, ...] = ()
    package_config: Optional[PackageConfig] = None


@dataclass(frozen=True)
class Spec:
    name: str
    version: str
    revision: str = "1"
    packager: str = ""
    vendor: str = ""
    license: str = ""
    website: str = ""
    description: str = ""
    sources: Dict[str, Source] = field(default_factory=dict)
    build: BuildSteps = field(default_factory=BuildSteps)
    artifacts: Artifacts = field(default_factory=Artifacts)
    dependencies: Optional[PackageDependencies] = None
    image: Optional[ImageConfig] = None
    targets: Dict[str, Target] = field(default_factory=dict)
    tests: Tuple[TestSpec, ...] = ()
    package_config: Optional[PackageConfig] = None
    source_path: str = ""

    # --- target resolution: target override first, spec value otherwise ---
    def get_target(self, target_key: str) -> Optional[Target]:
        return self.targets.get(target_key)

    def get_dependencies(self, target_key: str) -> Optional[PackageDependencies]:
        t = self.get_target(target_key)
        if t is not None and t.dependencies is not None:
            return t.dependencies
        return self.dependencies

    def get_build_deps(self, target_key: str) -> Dict[str, PackageConstraint]:
        deps = self.get_dependencies(target_key)
        return dict(deps.build) if deps is not None else {}

    def get_runtime_deps(self, target_key: str) -> Dict[str, PackageConstraint]:
        deps = self.get_dependencies(target_key)
        return dict(deps.runtime) if deps is not None else {}

    def get_test_deps(self, target_key: str) -> List[str]:
        deps = self.get_dependencies(target_key)
        return list(deps.test) if deps is not None else []

    def get_base_output_image(self, target_key: str) -> str:
        t = self.get_target(target_key)
        if t is not None and t.image is not None and t.image.base:
            return t.image.base
        if self.image is not None:
            return self.image.base
        return ""

    def get_image_post(self, target_key: str) -> Optional[PostInstall]:
        t = self.get_target(target_key)
        if t is not None and t.image is not None and t.image.post is not None:
            return t.image.post
        if self.image is not None:
            return self.image.post
        return None

    def get_tests(self, target_key: str) -> List[TestSpec]:
        tests = list(self.tests)
        t = self.get_target(target_key)
        if t is not None:
            tests.extend(t.tests)
        return tests

    def get_signer(self, target_key: str) -> Optional[Signer]:
        t = self.get_target(target_key)
        if t is not None and t.package_config is not None and t.package_config.signer is not None:
            return t.package_config.signer
        if self.package_config is not None:
            return self.package_config.signer
        return None

    def has_systemd_units(self) -> bool:
        systemd = self.artifacts.systemd
        if systemd is None or systemd.is_empty():
            return False
        return len(systemd.units) > 0

    def build_deps_meta_spec(self, target_key: str) -> Optional["Spec"]:
        """
        The intermediate ``<name>-deps`` package: its runtime dependencies are
        exactly this spec's build dependencies for ``target_key``. None when
        there is nothing to install.
        """
        build_deps = self.get_build_deps(target_key)
        if not build_deps:
            return None
        return Spec(
            name=self.name + "-deps",
            version=self.version,
            revision=self.revision,
            packager="debforge",
            description="Build dependencies for " + self.name,
            dependencies=PackageDependencies(runtime=build_deps),
        )

# -----------------------
# Parsing helpers
# -----------------------
def _as_tuple(val: Any) -> Tuple[str, ...]:
    if val is None:
        return ()
    if isinstance(val, (list, tuple)):
        return tuple(str(v) for v in val)
    return (str(val),)

def _as_mapping(val: Any, where: str, issues: List[str]) -> Dict[Any, Any]:
    if val is None:
        return {}
    if not isinstance(val, dict):
        issues.append(f"{where} must be a mapping")
        return {}
    return val

def _as_str_dict(val: Any, where: str, issues: List[str]) -> Dict[str, str]:
    if val is None:
        return {}
    if not isinstance(val, dict):
        issues.append(f"{where} must be a mapping")
        return {}
    return {str(k): "" if v is None else str(v) for k, v in val.items()}

def _as_mode(val: Any, where: str, issues: List[str]) -> Optional[int]:
    if val is None:
        return None
    if isinstance(val, int):
        return val
    try:
        return int(str(val), 8)
    except ValueError:
        issues.append(f"{where}: invalid permissions {val!r}")
        return None

def _check_versions(versions: Tuple[str, ...], where: str, issues: List[str]) -> Tuple[str, ...]:
    for v in versions:
        if not VERSION_EXPR_RE.match(v):
            issues.append(f"{where}: invalid version constraint {v!r}")
    return versions

def _parse_constraint(name: str, val: Any, where: str, issues: List[str]) -> PackageConstraint:
    if val is None:
        return PackageConstraint()
    if isinstance(val, (str, list, tuple)):
        return PackageConstraint(version=_check_versions(_as_tuple(val), f"{where}.{name}", issues))
    if isinstance(val, dict):
        unknown = set(val) - {"version", "arch"}
        if unknown:
            issues.append(f"{where}.{name}: unknown constraint keys {sorted(unknown)}")
        version = _check_versions(_as_tuple(val.get("version")), f"{where}.{name}", issues)
        return PackageConstraint(version=version, arch=_as_tuple(val.get("arch")))
    issues.append(f"{where}.{name}: constraint must be a string, list or mapping")
    return PackageConstraint()

def _parse_dep_map(val: Any, where: str, issues: List[str]) -> Dict[str, PackageConstraint]:
    if val is None:
        return {}
    if isinstance(val, list):
        return {str(n): PackageConstraint() for n in val}
    if not isinstance(val, dict):
        issues.append(f"{where} must be a mapping of package name to constraint")
        return {}
    return {str(k): _parse_constraint(str(k), v, where, issues) for k, v in val.items()}

def _parse_dependencies(val: Any, where: str, issues: List[str]) -> Optional[PackageDependencies]:
    if val is None:
        return None
    if not isinstance(val, dict):
        issues.append(f"{where} must be a mapping")
        return None
    # test deps are plain names; a name -> constraint mapping is accepted too
    test = val.get("test")
    return PackageDependencies(
        build=_parse_dep_map(val.get("build"), f"{where}.build", issues),
        runtime=_parse_dep_map(val.get("runtime"), f"{where}.runtime", issues),
        test=_as_tuple(list(test) if isinstance(test, dict) else test),
    )

def _parse_post(val: Any, where: str, issues: List[str]) -> Optional[PostInstall]:
    if val is None:
        return None
    if not isinstance(val, dict):
        issues.append(f"{where} must be a mapping")
        return None
    links: Dict[str, SymlinkTarget] = {}
    for old, tgt in _as_mapping(val.get("symlinks"), f"{where}.symlinks", issues).items():
        path = tgt.get("path") if isinstance(tgt, dict) else tgt
        if not path:
            issues.append(f"{where}.symlinks.{old}: path is required")
            continue
        if not str(path).startswith("/"):
            issues.append(f"{where}.symlinks.{old}: path must be absolute")
            continue
        links[str(old)] = SymlinkTarget(path=str(path))
    return PostInstall(symlinks=links)

def _parse_image(val: Any, where: str, issues: List[str]) -> Optional[ImageConfig]:
    if val is None:
        return None
    if not isinstance(val, dict):
        issues.append(f"{where} must be a mapping")
        return None
    env = val.get("env") or []
    if isinstance(env, dict):
        env = [f"{k}={v}" for k, v in env.items()]
    return ImageConfig(
        base=str(val.get("base") or ""),
        entrypoint=_as_tuple(val["entrypoint"]) if val.get("entrypoint") is not None else None,
        cmd=_as_tuple(val["cmd"]) if val.get("cmd") is not None else None,
        env=_as_tuple(env),
        labels=_as_str_dict(val.get("labels"), f"{where}.labels", issues),
        workdir=str(val.get("workdir") or ""),
        user=str(val.get("user") or ""),
        volumes=_as_tuple(val.get("volumes")),
        stop_signal=str(val.get("stop_signal") or ""),
        post=_parse_post(val.get("post"), f"{where}.post", issues),
    )

def _parse_check(val: Any, where: str, issues: List[str], cls=CheckOutput, **extra) -> Any:
    if val is None:
        return cls(**extra)
    if not isinstance(val, dict):
        issues.append(f"{where} must be a mapping")
        return cls(**extra)
    return cls(
        equals=val.get("equals"),
        contains=_as_tuple(val.get("contains")),
        matches=_as_tuple(val.get("matches")),
        starts_with=val.get("starts_with"),
        ends_with=val.get("ends_with"),
        empty=bool(val.get("empty", False)),
        **extra,
    )

def _parse_tests(val: Any, where: str, issues: List[str]) -> Tuple[TestSpec, ...]:
    if val is None:
        return ()
    if not isinstance(val, list):
        issues.append(f"{where} must be a list")
        return ()
    tests = []
    for i, t in enumerate(val):
        tw = f"{where}[{i}]"
        if not isinstance(t, dict) or not t.get("name"):
            issues.append(f"{tw}: a test needs a name")
            continue
        steps = []
        for j, s in enumerate(t.get("steps") or []):
            sw = f"{tw}.steps[{j}]"
            if not isinstance(s, dict) or not s.get("command"):
                issues.append(f"{sw}: command is required")
                continue
            steps.append(TestStep(
                command=str(s["command"]),
                env=_as_str_dict(s.get("env"), f"{sw}.env", issues),
                stdout=_parse_check(s.get("stdout"), f"{sw}.stdout", issues),
                stderr=_parse_check(s.get("stderr"), f"{sw}.stderr", issues),
            ))
        files = {}
        for path, chk in _as_mapping(t.get("files"), f"{tw}.files", issues).items():
            fw = f"{tw}.files.{path}"
            chk = chk or {}
            files[str(path)] = _parse_check(
                chk, fw, issues, cls=FileCheck,
                not_exist=bool(chk.get("not_exist", False)) if isinstance(chk, dict) else False,
                is_dir=bool(chk.get("is_dir", False)) if isinstance(chk, dict) else False,
                permissions=_as_mode(chk.get("permissions"), fw, issues) if isinstance(chk, dict) else None,
            )
        tests.append(TestSpec(name=str(t["name"]), steps=tuple(steps), files=files))
    return tuple(tests)

def _parse_sources(val: Any, issues: List[str]) -> Dict[str, Source]:
    if val is None:
        return {}
    if not isinstance(val, dict):
        issues.append("sources must be a mapping")
        return {}
    out: Dict[str, Source] = {}
    for name, s in val.items():
        where = f"sources.{name}"
        if not isinstance(s, dict):
            issues.append(f"{where} must be a mapping")
            continue
        kinds = [k for k in ("context", "inline", "http") if k in s]
        if len(kinds) != 1:
            issues.append(f"{where}: exactly one of context, inline, http is required")
            continue
        kind = kinds[0]
        body = s[kind] or {}
        path = str(s.get("path") or "/")
        if kind == "context":
            ctx = body.get("name") if isinstance(body, dict) else body
            out[name] = Source(name=name, kind=kind, context=str(ctx or "context"), path=path)
        elif kind == "inline":
            files: Dict[str, InlineFile] = {}
            for fname, f in ((body.get("files") if isinstance(body, dict) else None) or {}).items():
                f = f or {}
                if not isinstance(f, dict):
                    f = {"contents": f}
                mode = _as_mode(f.get("permissions"), f"{where}.{fname}", issues)
                files[str(fname)] = InlineFile(contents=str(f.get("contents") or ""), permissions=mode if mode is not None else 0o644)
            if not files:
                issues.append(f"{where}: inline source declares no files")
            out[name] = Source(name=name, kind=kind, files=files, path=path)
        else:
            if not isinstance(body, dict) or not body.get("url"):
                issues.append(f"{where}: http source needs a url")
                continue
            out[name] = Source(name=name, kind=kind, url=str(body["url"]), digest=str(body.get("digest") or ""), path=path)
    return out

def _parse_package_config(val: Any, where: str, issues: List[str]) -> Optional[PackageConfig]:
    if val is None:
        return None
    signer = val.get("signer") if isinstance(val, dict) else None
    if signer is None:
        return PackageConfig()
    if not isinstance(signer, dict) or not signer.get("image"):
        issues.append(f"{where}.signer: image is required")
        return PackageConfig()
    return PackageConfig(signer=Signer(
        image=str(signer["image"]),
        args=_as_tuple(signer.get("args")),
        env=_as_str_dict(signer.get("env"), f"{where}.signer.env", issues),
    ))

def _parse_artifacts(val: Any, issues: List[str]) -> Artifacts:
    if val is None:
        return Artifacts()
    if not isinstance(val, dict):
        issues.append("artifacts must be a mapping")
        return Artifacts()
    binaries = {}
    for path, cfg in _as_mapping(val.get("binaries"), "artifacts.binaries", issues).items():
        cfg = _as_mapping(cfg, f"artifacts.binaries.{path}", issues)
        binaries[str(path)] = ArtifactConfig(subpath=str(cfg.get("subpath") or ""), name=str(cfg.get("name") or ""))
    systemd = None
    if val.get("systemd") is not None:
        units = {}
        sd = _as_mapping(val["systemd"], "artifacts.systemd", issues)
        for path, cfg in _as_mapping(sd.get("units"), "artifacts.systemd.units", issues).items():
            cfg = _as_mapping(cfg, f"artifacts.systemd.units.{path}", issues)
            units[str(path)] = SystemdUnit(name=str(cfg.get("name") or ""), enable=bool(cfg.get("enable", False)))
        systemd = SystemdConfig(units=units)
    return Artifacts(binaries=binaries, systemd=systemd)

def _parse_build(val: Any, issues: List[str]) -> BuildSteps:
    if val is None:
        return BuildSteps()
    if not isinstance(val, dict):
        issues.append("build must be a mapping")
        return BuildSteps()
    steps = []
    for i, s in enumerate(val.get("steps") or []):
        if isinstance(s, str):
            s = {"command": s}
        if not isinstance(s, dict) or not s.get("command"):
            issues.append(f"build.steps[{i}]: command is required")
            continue
        steps.append(BuildStep(command=str(s["command"]), env=_as_str_dict(s.get("env"), f"build.steps[{i}].env", issues)))
    return BuildSteps(env=_as_str_dict(val.get("env"), "build.env", issues), steps=tuple(steps))

# -----------------------
# Public loader API
# -----------------------
def parse_spec(data: Dict[str, Any], source_path: str = "") -> Spec:
    """Build a Spec from an already-parsed mapping. Raises SpecError listing every issue."""
    if not isinstance(data, dict):
        raise SpecError("spec must be a mapping")
    issues: List[str] = []

    name = str(data.get("name") or "")
    version = "" if data.get("version") is None else str(data.get("version"))
    if not name:
        issues.append("name is required")
    elif not NAME_RE.match(name):
        issues.append(f"name {name!r} is not a valid package name")
    if not version:
        issues.append("version is required")
    revision = "1" if data.get("revision") is None else str(data.get("revision"))

    targets: Dict[str, Target] = {}
    for key, t in _as_mapping(data.get("targets"), "targets", issues).items():
        where = f"targets.{key}"
        if t is None:
            t = {}
        if not isinstance(t, dict):
            issues.append(f"{where} must be a mapping")
            continue
        targets[str(key)] = Target(
            dependencies=_parse_dependencies(t.get("dependencies"), f"{where}.dependencies", issues),
            image=_parse_image(t.get("image"), f"{where}.image", issues),
            tests=_parse_tests(t.get("tests"), f"{where}.tests", issues),
            package_config=_parse_package_config(t.get("package_config"), f"{where}.package_config", issues),
        )

    spec = Spec(
        name=name,
        version=version,
        revision=revision,
        packager=str(data.get("packager") or ""),
        vendor=str(data.get("vendor") or ""),
        license=str(data.get("license") or ""),
        website=str(data.get("website") or ""),
        description=str(data.get("description") or ""),
        sources=_parse_sources(data.get("sources"), issues),
        build=_parse_build(data.get("build"), issues),
        artifacts=_parse_artifacts(data.get("artifacts"), issues),
        dependencies=_parse_dependencies(data.get("dependencies"), "dependencies", issues),
        image=_parse_image(data.get("image"), "image", issues),
        targets=targets,
        tests=_parse_tests(data.get("tests"), "tests", issues),
        package_config=_parse_package_config(data.get("package_config"), "package_config", issues),
        source_path=source_path,
    )
    if issues:
        raise SpecError("invalid spec: " + "; ".join(issues))
    return spec

def loads_spec(text: str, source_path: str = "") -> Spec:
    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as e:
        raise SpecError(f"cannot parse spec {source_path or '<string>'}: {e}") from e
    return parse_spec(data or {}, source_path=source_path)

def load_spec(path: str) -> Spec:
    try:
        with open(path, "r", encoding="utf-8") as fh:
            text = fh.read()
    except OSError as e:
        raise SpecError(f"cannot read spec {path}: {e}") from e
    if path.endswith(".json"):
        try:
            return parse_spec(json.loads(text), source_path=os.path.abspath(path))
        except ValueError as e:
            raise SpecError(f"cannot parse spec {path}: {e}") from e
    spec = loads_spec(text, source_path=os.path.abspath(path))
    logger.debug("loaded spec %s %s-%s from %s", spec.name, spec.version, spec.revision, path)
    return spec
