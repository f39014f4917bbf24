# debforge/signing.py
"""
Optional package signing.

A signer is an image named in ``package_config.signer`` (target first, then
spec). It runs inside the graph with the built packages mounted read-only at
/tmp/in and writes the signed replacements to /tmp/out. The command is the
signer's ``args`` when given, otherwise the image's Entrypoint + Cmd.
"""

from __future__ import annotations

import json
from typing import List, Optional

from debforge.config import get_config
from debforge.engine import SourceOpts
from debforge.errors import SigningError
from debforge.graph import State, add_env, add_mount, args, progress_group
from debforge.logging import get_logger
from debforge.spec import Signer, Spec

logger = get_logger("signing")

SIGN_INPUT = "/tmp/in"
SIGN_OUTPUT = "/tmp/out"


def _signer_command(sopt: SourceOpts, signer: Signer, platform: Optional[str]) -> List[str]:
    if signer.args:
        return list(signer.args)
    try:
        cfg = json.loads(sopt.resolve_image_config(signer.image, platform) or b"{}").get("config") or {}
    except Exception as e:
        raise SigningError(f"error resolving signer image {signer.image}: {e}", stage="sign") from e
    cmd = list(cfg.get("Entrypoint") or []) + list(cfg.get("Cmd") or [])
    if not cmd:
        raise SigningError(f"signer image {signer.image} has no command and no args were given", stage="sign")
    return cmd


def maybe_sign(sopt: SourceOpts, st: State, spec: Spec, target_key: str, platform: Optional[str] = None) -> State:
    """Return ``st`` unchanged when no signer applies, else the signer's output."""
    signer = spec.get_signer(target_key)
    if signer is None:
        return st
    if not get_config().get("signing.enabled", True):
        logger.warning("signer %s configured for %s but signing is disabled; packages left unsigned",
                       signer.image, spec.name)
        return st

    try:
        image = State.image(signer.image, resolver=sopt.resolver, platform=platform,
                            description=f"signer {signer.image}")
    except Exception as e:
        raise SigningError(f"error resolving signer image {signer.image}: {e}", stage="sign") from e

    opts = [
        args(*_signer_command(sopt, signer, platform)),
        add_mount(SIGN_INPUT, st, readonly=True),
        add_env("DEBFORGE_SIGN_INPUT", SIGN_INPUT),
        add_env("DEBFORGE_SIGN_OUTPUT", SIGN_OUTPUT),
        progress_group(f"Sign {spec.name}"),
    ]
    for k in sorted(signer.env):
        opts.append(add_env(k, signer.env[k]))
    logger.info("signing %s with %s", spec.name, signer.image)
    return image.run(*opts).add_mount(SIGN_OUTPUT, State.scratch())
