# debforge/image.py
"""
Image config for container targets: the base image's config JSON with the
spec image section, then the target image section, merged over it.
"""

from __future__ import annotations

import json
import platform as _platform
from copy import deepcopy
from typing import Any, Dict, Optional

from debforge.engine import SourceOpts
from debforge.errors import ResolutionError
from debforge.spec import ImageConfig, Spec

_ARCH_MAP = {"x86_64": "amd64", "amd64": "amd64", "aarch64": "arm64", "arm64": "arm64", "armv7l": "arm"}


def default_platform() -> str:
    machine = _platform.machine().lower()
    return "linux/" + _ARCH_MAP.get(machine, machine or "amd64")


def merge_env(env: list, overrides) -> list:
    """Override entries replace an existing KEY=... in place; new keys are appended."""
    out = list(env)
    for item in overrides:
        key = item.split("=", 1)[0]
        for i, existing in enumerate(out):
            if existing.split("=", 1)[0] == key:
                out[i] = item
                break
        else:
            out.append(item)
    return out


def merge_image_config(base: Dict[str, Any], img: Optional[ImageConfig]) -> Dict[str, Any]:
    """Return a copy of ``base`` (an OCI image config document) with ``img`` applied."""
    out = deepcopy(base)
    if img is None:
        return out
    cfg = out.setdefault("config", {})
    if img.env:
        cfg["Env"] = merge_env(cfg.get("Env") or [], img.env)
    if img.labels:
        labels = dict(cfg.get("Labels") or {})
        labels.update(img.labels)
        cfg["Labels"] = labels
    if img.volumes:
        volumes = dict(cfg.get("Volumes") or {})
        for v in img.volumes:
            volumes[v] = {}
        cfg["Volumes"] = volumes
    if img.entrypoint is not None:
        cfg["Entrypoint"] = list(img.entrypoint)
    if img.cmd is not None:
        cfg["Cmd"] = list(img.cmd)
    if img.workdir:
        cfg["WorkingDir"] = img.workdir
    if img.user:
        cfg["User"] = img.user
    if img.stop_signal:
        cfg["StopSignal"] = img.stop_signal
    return out


def build_image_config(sopt: SourceOpts, spec: Spec, target_key: str, base_ref: str,
                       platform: Optional[str] = None) -> Dict[str, Any]:
    platform = platform or default_platform()
    try:
        base = json.loads(sopt.resolve_image_config(base_ref, platform) or b"{}")
    except Exception as e:
        raise ResolutionError(f"error resolving image config for {base_ref}: {e}", stage="image") from e
    os_name, _, arch = platform.partition("/")
    base.setdefault("os", os_name)
    base.setdefault("architecture", arch.split("/")[0] if arch else "")

    out = merge_image_config(base, spec.image)
    target = spec.get_target(target_key)
    if target is not None:
        out = merge_image_config(out, target.image)
    return out
