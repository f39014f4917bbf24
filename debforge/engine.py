# debforge/engine.py
"""
engine.py - the seam between debforge and the build-graph execution engine

debforge never executes anything itself. An engine implementation is handed
marshalled Definitions and is responsible for caching, de-duplication and
running independent branches in parallel. It must provide:

  Client.solve(definition) -> Reference
  Client.resolve_image_config(ref, platform) -> bytes   (image config JSON)
  Client.get_context(name) -> Optional[State]            (named build contexts)

  Reference.to_state() / read_file(path) / stat(path) / read_dir(path)

Failed solves raise debforge.errors.SolveError with whatever diagnostic
output the engine captured.

PlanClient is an offline client used by ``debforge plan``: it records every
definition it is asked to solve and never touches the network.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol

from debforge.errors import EngineError, ResolutionError
from debforge.graph import Definition, Output, SourceOp, State
from debforge.logging import get_logger

logger = get_logger("engine")

# ----------------------------
# Protocols
# ----------------------------
@dataclass(frozen=True)
class FileStat:
    path: str
    mode: int
    size: int = 0
    is_dir: bool = False


class Reference(Protocol):
    def to_state(self) -> State: ...

    def read_file(self, path: str) -> bytes: ...

    def stat(self, path: str) -> FileStat:
        """Raise FileNotFoundError when ``path`` does not exist."""
        ...

    def read_dir(self, path: str) -> List[str]: ...


class Client(Protocol):
    def solve(self, definition: Definition) -> Reference: ...

    def resolve_image_config(self, ref: str, platform: Optional[str] = None) -> bytes: ...

    def get_context(self, name: str) -> Optional[State]: ...

# ----------------------------
# Source options
# ----------------------------
class SourceOpts:
    """
    Source-context provider handed to every stage. Wraps the client so stages
    can look up named contexts and resolve image metadata without holding the
    whole client.
    """

    def __init__(self, client: Client):
        self._client = client
        self.resolver = client

    def get_context(self, name: str) -> Optional[State]:
        try:
            return self._client.get_context(name)
        except ResolutionError:
            raise
        except Exception as e:
            raise ResolutionError(f"error resolving build context {name!r}: {e}", stage="worker") from e

    def resolve_image_config(self, ref: str, platform: Optional[str] = None) -> bytes:
        return self._client.resolve_image_config(ref, platform)


def source_opts_from_client(client: Client) -> SourceOpts:
    return SourceOpts(client)


def solve_state(client: Client, state: State) -> Reference:
    definition = state.marshal()
    logger.debug("solving %d ops (root=%s)", len(definition.ops), definition.root)
    return client.solve(definition)


def result_state(definition: Definition) -> State:
    """State standing for an already-solved result, for engines without a native handle."""
    if definition.root is None:
        return State.scratch()
    return State(output=Output(SourceOp(identifier=f"result://{definition.root}", description="solved result")))

# ----------------------------
# Offline planning client
# ----------------------------
@dataclass
class PlannedReference:
    definition: Definition

    def to_state(self) -> State:
        return result_state(self.definition)

    def read_file(self, path: str) -> bytes:
        raise EngineError(f"cannot read {path}: plan mode does not execute the graph")

    def stat(self, path: str) -> FileStat:
        raise FileNotFoundError(path)

    def read_dir(self, path: str) -> List[str]:
        return []


@dataclass
class PlanClient:
    contexts: Dict[str, State] = field(default_factory=dict)
    image_configs: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    solved: List[Definition] = field(default_factory=list)

    def solve(self, definition: Definition) -> PlannedReference:
        self.solved.append(definition)
        return PlannedReference(definition=definition)

    def resolve_image_config(self, ref: str, platform: Optional[str] = None) -> bytes:
        cfg = self.image_configs.get(ref) or {"config": {}}
        if platform:
            cfg = dict(cfg)
            cfg.setdefault("os", platform.split("/")[0])
        return json.dumps(cfg).encode("utf-8")

    def get_context(self, name: str) -> Optional[State]:
        return self.contexts.get(name)

