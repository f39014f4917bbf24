# debforge/worker.py
# -*- coding: utf-8 -*-
"""
Worker resolution.

The worker is the build environment every later stage runs in. It is looked
up through an ordered list of strategies; the first one that returns a state
wins:

  1. a build context named after the distro's default image
  2. a build context named after the distro's worker (debforge-<distro>-worker)
  3. the distro image itself, bootstrapped with the packaging toolchain

The worker is resolved once per build and shared read-only afterwards.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import List, Optional, Sequence

from debforge.distro import DistroConfig
from debforge.engine import SourceOpts
from debforge.errors import ForgeError, ResolutionError
from debforge.graph import State, add_env, progress_group, shell
from debforge.logging import get_logger

logger = get_logger("worker")


def base_packages(distro: DistroConfig) -> List[str]:
    return list(distro.builder_packages)


class WorkerStrategy(ABC):
    name = "strategy"

    @abstractmethod
    def resolve(self, sopt: SourceOpts, distro: DistroConfig, platform: Optional[str] = None) -> Optional[State]:
        """Return the worker state, or None to let the next strategy try."""


class NamedContextStrategy(WorkerStrategy):
    """Use a named build context if the caller supplied one. ``attr`` picks the name off the distro."""

    def __init__(self, attr: str):
        self.attr = attr
        self.name = f"context:{attr}"

    def context_name(self, distro: DistroConfig) -> str:
        return getattr(distro, self.attr)

    def resolve(self, sopt, distro, platform=None):
        name = self.context_name(distro)
        st = sopt.get_context(name)
        if st is not None:
            logger.info("using worker override context %s", name)
        return st


class BootstrapStrategy(WorkerStrategy):
    name = "bootstrap"

    def command(self, distro: DistroConfig) -> str:
        return "apt update && apt install -y " + " ".join(base_packages(distro))

    def resolve(self, sopt, distro, platform=None):
        logger.debug("bootstrapping worker from %s", distro.image_ref)
        base = State.image(distro.image_ref, resolver=sopt.resolver, platform=platform,
                           description=f"{distro.key} base image")
        return base.run(
            shell(self.command(distro)),
            add_env("DEBIAN_FRONTEND", "noninteractive"),
            distro.with_mounted_apt_cache(),
            progress_group(f"Install {distro.key} packaging toolchain"),
        ).root()


DEFAULT_STRATEGIES: Sequence[WorkerStrategy] = (
    NamedContextStrategy("image_ref"),
    NamedContextStrategy("context_ref"),
    BootstrapStrategy(),
)


class WorkerResolver:
    def __init__(self, strategies: Optional[Sequence[WorkerStrategy]] = None):
        self.strategies = list(strategies if strategies is not None else DEFAULT_STRATEGIES)

    def resolve(self, sopt: SourceOpts, distro: DistroConfig, platform: Optional[str] = None) -> State:
        for strat in self.strategies:
            try:
                st = strat.resolve(sopt, distro, platform)
            except ResolutionError as e:
                if e.stage is None:
                    e.stage = "worker"
                raise
            except ForgeError:
                raise
            except Exception as e:
                raise ResolutionError(f"error resolving worker for {distro.key} ({strat.name}): {e}",
                                      stage="worker") from e
            if st is not None:
                return st
        raise ResolutionError(f"no worker strategy produced a worker for {distro.key}", stage="worker")
