import base64
import json
from typing import Any, Callable, Dict, List, Optional

import pytest

from debforge import config as config_mod
from debforge.engine import FileStat, result_state
from debforge.graph import Definition, ExecOp, FileOp, Mkfile, Op, State
from debforge.spec import parse_spec


@pytest.fixture(autouse=True)
def isolated_config(tmp_path, monkeypatch):
    """Every test starts from DEFAULTS, away from any real config file."""
    monkeypatch.delenv("DEBFORGE_CONFIG", raising=False)
    monkeypatch.setenv("HOME", str(tmp_path))
    monkeypatch.chdir(tmp_path)
    config_mod.from_dict({})
    yield
    config_mod.reset()


class FakeRef:
    def __init__(self, client: "FakeClient", definition: Definition):
        self.client = client
        self.definition = definition

    def to_state(self) -> State:
        return result_state(self.definition)

    def read_file(self, path: str) -> bytes:
        if path not in self.client.files:
            raise FileNotFoundError(path)
        return self.client.files[path]

    def stat(self, path: str) -> FileStat:
        if path not in self.client.stats:
            raise FileNotFoundError(path)
        return self.client.stats[path]

    def read_dir(self, path: str) -> List[str]:
        return []


class FakeClient:
    """
    Scripted engine client. Records every solved definition; ``fail`` may
    return an exception to raise for a given definition.
    """

    def __init__(self, contexts=None, image_configs=None, files=None, stats=None,
                 fail: Optional[Callable[[Definition], Optional[Exception]]] = None):
        self.contexts: Dict[str, State] = dict(contexts or {})
        self.image_configs: Dict[str, Dict[str, Any]] = dict(image_configs or {})
        self.files: Dict[str, bytes] = dict(files or {})
        self.stats: Dict[str, FileStat] = dict(stats or {})
        self.fail = fail
        self.solved: List[Definition] = []
        self.context_requests: List[str] = []
        self.image_requests: List[tuple] = []

    def solve(self, definition: Definition) -> FakeRef:
        self.solved.append(definition)
        if self.fail is not None:
            err = self.fail(definition)
            if err is not None:
                raise err
        return FakeRef(self, definition)

    def resolve_image_config(self, ref: str, platform: Optional[str] = None) -> bytes:
        self.image_requests.append((ref, platform))
        return json.dumps(self.image_configs.get(ref, {"config": {}})).encode("utf-8")

    def get_context(self, name: str) -> Optional[State]:
        self.context_requests.append(name)
        return self.contexts.get(name)


@pytest.fixture
def client():
    return FakeClient()


def make_spec(**overrides):
    data = {"name": "foo", "version": "1.0", "packager": "Foo Maintainers <foo@example.com>"}
    data.update(overrides)
    return parse_spec(data)


# -----------------------
# graph walking helpers
# -----------------------
def walk_ops(state_or_op) -> List[Op]:
    """All ops reachable from a State (or Op), dependencies first, no duplicates."""
    root = state_or_op.output.op if isinstance(state_or_op, State) else state_or_op
    seen: List[Op] = []

    def visit(op):
        if any(op is s for s in seen):
            return
        for inp in op.inputs():
            visit(inp.op)
        seen.append(op)

    if root is not None:
        visit(root)
    return seen


def exec_ops(state) -> List[ExecOp]:
    return [op for op in walk_ops(state) if isinstance(op, ExecOp)]


def find_exec(state, needle: str) -> ExecOp:
    for op in exec_ops(state):
        if any(needle in a for a in op.args):
            return op
    raise AssertionError(f"no exec op running {needle!r}")


def command(op: ExecOp) -> str:
    return op.args[-1]


def find_file(state_or_op, path: str) -> bytes:
    for op in walk_ops(state_or_op):
        if isinstance(op, FileOp):
            for a in op.actions:
                if isinstance(a, Mkfile) and a.path == path:
                    return a.data
    raise AssertionError(f"no mkfile for {path}")


def definition_files(definition: Definition) -> Dict[str, bytes]:
    out = {}
    for op in definition.ops:
        for a in op.get("actions", []):
            if a["action"] == "mkfile":
                out[a["path"]] = base64.b64decode(a["data"])
    return out


def definition_commands(definition: Definition) -> List[str]:
    return [op["args"][-1] for op in definition.ops if op["type"] == "exec"]
