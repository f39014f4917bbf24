# debforge/graph.py
# -*- coding: utf-8 -*-
"""
graph.py - immutable build graph handed to the execution engine

A build is described as a DAG of operations:

  - SourceOp : image pulls, named build contexts, http downloads
  - ExecOp   : a command run over a root filesystem plus extra mounts
  - FileOp   : mkfile / mkdir / copy actions over a base filesystem

``State`` is a handle on one output of one op (or on the empty filesystem,
"scratch"). Every method on a State returns a new State; nothing is mutated
in place, so a worker state can be shared by every downstream stage.

Each op has a content digest: sha256 over its canonical JSON, which embeds
the digests of its inputs. Progress descriptions live in definition metadata
and are kept out of the digest, so identical inputs always marshal to
identical digests and the engine can cache and de-duplicate on them.
"""

from __future__ import annotations

import base64
import hashlib
import json
from dataclasses import dataclass, field, replace
from functools import cached_property
from typing import Any, Callable, Dict, List, Optional, Tuple

from debforge.errors import ResolutionError

SECURITY_SANDBOX = "sandbox"
SECURITY_INSECURE = "insecure"

SHARING_SHARED = "shared"
SHARING_PRIVATE = "private"
SHARING_LOCKED = "locked"

MOUNT_BIND = "bind"
MOUNT_CACHE = "cache"

# -----------------------
# Utilities
# -----------------------
def _digest_obj(obj: Any) -> str:
    """Deterministic digest of a JSON-able object."""
    j = json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False)
    return "sha256:" + hashlib.sha256(j.encode("utf-8")).hexdigest()


class Op:
    """Base for graph operations. Subclasses are frozen dataclasses."""

    kind = "op"
    description: str = ""

    def inputs(self) -> List["Output"]:
        return []

    def fields(self, index_of: Callable[[Optional["Output"]], int]) -> Dict[str, Any]:
        return {}

    def to_dict(self) -> Dict[str, Any]:
        inputs = self.inputs()

        def index_of(out: Optional[Output]) -> int:
            if out is None:
                return -1
            for i, candidate in enumerate(inputs):
                if candidate is out or candidate == out:
                    return i
            raise ValueError("output is not an input of this op")

        d = {"type": self.kind, "inputs": [{"digest": o.op.digest, "index": o.index} for o in inputs]}
        d.update(self.fields(index_of))
        return d

    @cached_property
    def digest(self) -> str:
        return _digest_obj(self.to_dict())


@dataclass(frozen=True)
class Output:
    op: Op
    index: int = 0

    def ref(self) -> str:
        return f"{self.op.digest}#{self.index}"


def _unique(outputs: List[Optional[Output]]) -> List[Output]:
    seen: List[Output] = []
    for o in outputs:
        if o is not None and o not in seen:
            seen.append(o)
    return seen

# -----------------------
# Source ops
# -----------------------
@dataclass(frozen=True)
class SourceOp(Op):
    identifier: str
    attrs: Tuple[Tuple[str, str], ...] = ()
    description: str = field(default="", compare=False)

    kind = "source"

    def fields(self, index_of):
        return {"identifier": self.identifier, "attrs": dict(self.attrs)}

# -----------------------
# Exec ops
# -----------------------
@dataclass(frozen=True)
class Mount:
    dest: str
    source: Optional[Output] = None
    selector: str = "/"
    readonly: bool = False
    output: int = -1
    kind: str = MOUNT_BIND
    cache_id: str = ""
    sharing: str = ""


@dataclass(frozen=True)
class ExecOp(Op):
    args: Tuple[str, ...]
    env: Tuple[str, ...] = ()
    cwd: str = "/"
    user: str = ""
    mounts: Tuple[Mount, ...] = ()
    security: str = SECURITY_SANDBOX
    network: str = "sandbox"
    description: str = field(default="", compare=False)

    kind = "exec"

    def inputs(self):
        return _unique([m.source for m in self.mounts if m.kind == MOUNT_BIND])

    def fields(self, index_of):
        mounts = []
        for m in self.mounts:
            entry: Dict[str, Any] = {"dest": m.dest, "type": m.kind}
            if m.kind == MOUNT_CACHE:
                entry.update({"cache_id": m.cache_id, "sharing": m.sharing})
            else:
                entry.update({"input": index_of(m.source), "selector": m.selector,
                              "readonly": m.readonly, "output": m.output})
            mounts.append(entry)
        return {
            "args": list(self.args),
            "env": list(self.env),
            "cwd": self.cwd,
            "user": self.user,
            "mounts": mounts,
            "security": self.security,
            "network": self.network,
        }

    def next_output(self) -> int:
        return max([m.output for m in self.mounts] + [-1]) + 1

# -----------------------
# File ops
# -----------------------
@dataclass(frozen=True)
class Mkfile:
    path: str
    data: bytes = b""
    mode: int = 0o644

    def to_dict(self, index_of) -> Dict[str, Any]:
        return {"action": "mkfile", "path": self.path, "mode": self.mode,
                "data": base64.b64encode(self.data).decode("ascii")}


@dataclass(frozen=True)
class Mkdir:
    path: str
    mode: int = 0o755
    make_parents: bool = True

    def to_dict(self, index_of) -> Dict[str, Any]:
        return {"action": "mkdir", "path": self.path, "mode": self.mode, "make_parents": self.make_parents}


@dataclass(frozen=True)
class Copy:
    source: "State"
    src: str
    dest: str
    create_dest_path: bool = True
    allow_wildcard: bool = False

    def to_dict(self, index_of) -> Dict[str, Any]:
        return {"action": "copy", "input": index_of(self.source.output), "src": self.src, "dest": self.dest,
                "create_dest_path": self.create_dest_path, "allow_wildcard": self.allow_wildcard}


@dataclass(frozen=True)
class FileOp(Op):
    base: Optional[Output]
    actions: Tuple[Any, ...] = ()
    description: str = field(default="", compare=False)

    kind = "file"

    def inputs(self):
        return _unique([self.base] + [a.source.output for a in self.actions if isinstance(a, Copy)])

    def fields(self, index_of):
        return {"base": index_of(self.base), "actions": [a.to_dict(index_of) for a in self.actions]}

# -----------------------
# Run options
# -----------------------
class ExecInfo:
    """Mutable builder that run options fill in before an ExecOp is frozen."""

    def __init__(self, state: "State"):
        self.state = state
        self.args: List[str] = []
        self.env: Dict[str, str] = dict(state.env)
        self.cwd = state.cwd
        self.user = state.user
        self.mounts: List[Mount] = []
        self.security = SECURITY_SANDBOX
        self.network = "sandbox"
        self.description = ""

RunOption = Callable[[ExecInfo], None]
StateOption = Callable[["State"], "State"]


def shell(cmd: str) -> RunOption:
    def opt(ei: ExecInfo):
        ei.args = ["/bin/sh", "-c", cmd]
    return opt

def args(*argv: str) -> RunOption:
    def opt(ei: ExecInfo):
        ei.args = list(argv)
    return opt

def add_env(key: str, value: str) -> RunOption:
    def opt(ei: ExecInfo):
        ei.env[key] = value
    return opt

def workdir(path: str) -> RunOption:
    def opt(ei: ExecInfo):
        ei.cwd = path
    return opt

def add_mount(dest: str, source: "State", readonly: bool = False, source_path: str = "/") -> RunOption:
    def opt(ei: ExecInfo):
        ei.mounts.append(Mount(dest=dest, source=source.output, selector=source_path, readonly=readonly))
    return opt

def cache_mount(dest: str, cache_id: str, sharing: str = SHARING_LOCKED) -> RunOption:
    def opt(ei: ExecInfo):
        ei.mounts.append(Mount(dest=dest, kind=MOUNT_CACHE, cache_id=cache_id, sharing=sharing))
    return opt

def security(mode: str) -> RunOption:
    def opt(ei: ExecInfo):
        ei.security = mode
    return opt

def progress_group(name: str) -> RunOption:
    def opt(ei: ExecInfo):
        ei.description = name
    return opt

def run_options(*opts: Optional[RunOption]) -> RunOption:
    """Compose several run options into one; None entries are skipped."""
    def opt(ei: ExecInfo):
        for o in opts:
            if o is not None:
                o(ei)
    return opt

def identity(state: "State") -> "State":
    return state

# -----------------------
# States
# -----------------------
@dataclass(frozen=True)
class State:
    output: Optional[Output] = None
    env: Tuple[Tuple[str, str], ...] = ()
    cwd: str = "/"
    user: str = ""

    # constructors
    @classmethod
    def scratch(cls) -> "State":
        return cls()

    @classmethod
    def image(cls, ref: str, resolver: Any = None, platform: Optional[str] = None, description: str = "") -> "State":
        """
        Pull an image. With a resolver (anything with resolve_image_config) the
        image config is fetched now and its Env / WorkingDir / User become the
        state defaults for commands run on top of it.
        """
        attrs: Tuple[Tuple[str, str], ...] = (("platform", platform),) if platform else ()
        op = SourceOp(identifier=f"docker-image://{ref}", attrs=attrs, description=description or f"image {ref}")
        st = cls(output=Output(op))
        if resolver is None:
            return st
        try:
            raw = resolver.resolve_image_config(ref, platform)
            cfg = json.loads(raw or b"{}").get("config") or {}
        except ResolutionError:
            raise
        except Exception as e:
            raise ResolutionError(f"error resolving image metadata for {ref}: {e}", stage="worker") from e
        env = []
        for item in cfg.get("Env") or []:
            k, _, v = str(item).partition("=")
            env.append((k, v))
        return cls(output=st.output, env=tuple(env), cwd=cfg.get("WorkingDir") or "/", user=cfg.get("User") or "")

    @classmethod
    def local(cls, name: str, description: str = "") -> "State":
        return cls(output=Output(SourceOp(identifier=f"local://{name}", description=description or f"context {name}")))

    @classmethod
    def http(cls, url: str, digest: Optional[str] = None, filename: Optional[str] = None) -> "State":
        attrs = []
        if digest:
            attrs.append(("checksum", digest))
        if filename:
            attrs.append(("filename", filename))
        return cls(output=Output(SourceOp(identifier=url, attrs=tuple(attrs), description=f"download {url}")))

    # queries
    @property
    def is_scratch(self) -> bool:
        return self.output is None

    def get_env(self, key: str) -> Optional[str]:
        for k, v in self.env:
            if k == key:
                return v
        return None

    def digest(self) -> Optional[str]:
        return self.output.ref() if self.output else None

    # derivations
    def add_env(self, key: str, value: str) -> "State":
        env = tuple((k, v) for k, v in self.env if k != key) + ((key, value),)
        return replace(self, env=env)

    def with_(self, *opts: StateOption) -> "State":
        st = self
        for o in opts:
            st = o(st)
        return st

    def run(self, *opts: Optional[RunOption]) -> "ExecState":
        ei = ExecInfo(self)
        run_options(*opts)(ei)
        if not ei.args:
            raise ValueError("run() requires a command (use shell() or args())")
        mounts = [Mount(dest="/", source=self.output, output=0)]
        next_out = 1
        for m in ei.mounts:
            if m.kind == MOUNT_BIND and not m.readonly:
                m = replace(m, output=next_out)
                next_out += 1
            mounts.append(m)
        op = ExecOp(
            args=tuple(ei.args),
            env=tuple(f"{k}={v}" for k, v in ei.env.items()),
            cwd=ei.cwd,
            user=ei.user,
            mounts=tuple(mounts),
            security=ei.security,
            network=ei.network,
            description=ei.description,
        )
        return ExecState(op, self)

    def file(self, *actions: Any, description: str = "") -> "State":
        op = FileOp(base=self.output, actions=tuple(actions), description=description)
        return replace(self, output=Output(op))

    def marshal(self) -> "Definition":
        return marshal(self)


class ExecState:
    """Result of State.run(): pick the root or any writable mount as the next state."""

    def __init__(self, op: ExecOp, base: State):
        self.op = op
        self._base = base

    def root(self) -> State:
        return replace(self._base, output=Output(self.op, 0))

    def add_mount(self, dest: str, source: State, readonly: bool = False, source_path: str = "/") -> State:
        out_index = -1 if readonly else self.op.next_output()
        mount = Mount(dest=dest, source=source.output, selector=source_path, readonly=readonly, output=out_index)
        op = replace(self.op, mounts=self.op.mounts + (mount,))
        self.op = op
        if readonly:
            return source
        return State(output=Output(op, out_index))

    def get_mount(self, dest: str) -> State:
        for m in self.op.mounts:
            if m.dest == dest and m.output >= 0:
                return State(output=Output(self.op, m.output))
        raise KeyError(f"no writable mount at {dest}")

# -----------------------
# Marshalling
# -----------------------
@dataclass(frozen=True)
class Definition:
    ops: Tuple[Dict[str, Any], ...]
    root: Optional[str]
    metadata: Dict[str, Dict[str, str]] = field(default_factory=dict)

    @property
    def digest(self) -> str:
        return _digest_obj({"ops": [o["digest"] for o in self.ops], "root": self.root})

    def to_dict(self) -> Dict[str, Any]:
        return {"ops": list(self.ops), "root": self.root, "metadata": self.metadata}

    def to_json(self, indent: Optional[int] = None) -> str:
        return json.dumps(self.to_dict(), indent=indent, sort_keys=True)


def marshal(state: State) -> Definition:
    """Flatten the graph reachable from ``state`` into topologically ordered ops."""
    if state.is_scratch:
        return Definition(ops=(), root=None)
    ordered: List[Dict[str, Any]] = []
    metadata: Dict[str, Dict[str, str]] = {}
    seen: Dict[str, bool] = {}

    def visit(op: Op):
        d = op.digest
        if d in seen:
            return
        seen[d] = True
        for inp in op.inputs():
            visit(inp.op)
        entry = op.to_dict()
        entry["digest"] = d
        ordered.append(entry)
        if op.description:
            metadata[d] = {"description": op.description}

    visit(state.output.op)
    return Definition(ops=tuple(ordered), root=state.output.ref(), metadata=metadata)
