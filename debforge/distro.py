# debforge/distro.py
# -*- coding: utf-8 -*-
"""
Per-distro constants and the distro registry.

Built-in distros are jammy and focal. Extra ones can be declared in the
``distros`` config section:

    distros:
      noble:
        image_ref: mcr.microsoft.com/mirror/docker/library/ubuntu:noble
        version_id: ubuntu24.04
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Dict, List, Optional, Tuple

from debforge.config import get_section
from debforge.errors import ConfigError
from debforge.graph import RunOption, cache_mount, run_options, SHARING_LOCKED

DEBHELPER_COMPAT = "11"

BUILDER_PACKAGES: Tuple[str, ...] = (
    "aptitude",
    "dpkg-dev",
    "devscripts",
    "equivs",
    "fakeroot",
    "dh-make",
    "build-essential",
    "dh-apparmor",
    "dh-exec",
    "debhelper-compat=" + DEBHELPER_COMPAT,
)

APT_CACHE_DIR = "/var/cache/apt"
APT_LIB_DIR = "/var/lib/apt"


@dataclass(frozen=True)
class DistroConfig:
    """
    Everything that differs between two apt-based releases.

    ``image_ref`` is both the canonical base image and the name of the first
    override context; ``context_ref`` names the worker override context.
    """
    key: str
    codename: str
    image_ref: str
    context_ref: str
    version_id: str = ""
    debhelper_compat: str = DEBHELPER_COMPAT
    builder_packages: Tuple[str, ...] = BUILDER_PACKAGES
    default_output_image: str = ""

    @property
    def cache_prefix(self) -> str:
        return self.key

    @property
    def output_image(self) -> str:
        return self.default_output_image or self.image_ref

    def with_mounted_apt_cache(self, prefix: Optional[str] = None) -> RunOption:
        return with_mounted_apt_cache(prefix or self.cache_prefix)


def with_mounted_apt_cache(prefix: str) -> RunOption:
    """Cache mounts for the apt archive and lists, keyed by distro so releases never share them."""
    return run_options(
        cache_mount(APT_CACHE_DIR, f"{prefix}-debforge-var-cache-apt", sharing=SHARING_LOCKED),
        cache_mount(APT_LIB_DIR, f"{prefix}-debforge-var-lib-apt", sharing=SHARING_LOCKED),
    )


JAMMY = DistroConfig(
    key="jammy",
    codename="jammy",
    image_ref="mcr.microsoft.com/mirror/docker/library/ubuntu:jammy",
    context_ref="debforge-jammy-worker",
    version_id="ubuntu22.04",
)

FOCAL = DistroConfig(
    key="focal",
    codename="focal",
    image_ref="mcr.microsoft.com/mirror/docker/library/ubuntu:focal",
    context_ref="debforge-focal-worker",
    version_id="ubuntu20.04",
)

BUILTIN: Dict[str, DistroConfig] = {d.key: d for d in (JAMMY, FOCAL)}


def _from_config(key: str, data: Dict) -> DistroConfig:
    if not isinstance(data, dict) or not data.get("image_ref"):
        raise ConfigError(f"distros.{key}: image_ref is required")
    base = BUILTIN.get(key)
    pkgs = data.get("builder_packages")
    compat = data.get("debhelper_compat")
    if not pkgs and compat:
        pkgs = list(BUILDER_PACKAGES[:-1]) + ["debhelper-compat=" + str(compat)]
    if base is not None:
        d = replace(base, image_ref=str(data["image_ref"]))
    else:
        d = DistroConfig(key=key, codename=str(data.get("codename") or key), image_ref=str(data["image_ref"]),
                         context_ref=f"debforge-{key}-worker")
    return replace(
        d,
        codename=str(data.get("codename") or d.codename),
        context_ref=str(data.get("context_ref") or d.context_ref),
        version_id=str(data.get("version_id") if data.get("version_id") is not None else d.version_id),
        debhelper_compat=str(compat or d.debhelper_compat),
        builder_packages=tuple(str(p) for p in pkgs) if pkgs else d.builder_packages,
        default_output_image=str(data.get("default_output_image") or d.default_output_image),
    )


def registry() -> Dict[str, DistroConfig]:
    """Built-in distros overlaid with the ``distros`` config section."""
    out = dict(BUILTIN)
    for key, data in get_section("distros").items():
        out[str(key)] = _from_config(str(key), data)
    return out


def get_distro(key: str) -> DistroConfig:
    reg = registry()
    if key not in reg:
        raise ConfigError(f"unknown distro {key!r} (known: {', '.join(sorted(reg))})")
    return reg[key]


def distro_keys() -> List[str]:
    return sorted(registry())
