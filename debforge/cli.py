#!/usr/bin/env python3
# debforge/cli.py
"""
debforge command line

Subcommands:
  targets                              list build routes
  validate SPEC                        load and validate a spec file
  plan SPEC --target ROUTE [--json]    build the graph offline and show it
  debroot SPEC --target DISTRO -o DIR  write the generated debian/ tree
  config [--validate]                  show (and check) the merged config

Building against a real engine is done through debforge.frontend.build()
with an engine client; the CLI only ever uses the offline PlanClient.
"""

from __future__ import annotations

import argparse
import sys
from typing import List, Optional

import yaml
from rich.console import Console
from rich.table import Table

from debforge import config as config_mod
from debforge import debroot as debroot_mod
from debforge.distro import get_distro
from debforge.engine import PlanClient
from debforge.errors import ForgeError
from debforge.frontend import get_frontend, parse_route, routes
from debforge.logging import get_logger, reload_config as reload_logging, set_level
from debforge.spec import load_spec

logger = get_logger("cli")
console = Console()

# -----------------------
# Small pretty helpers
# -----------------------
def print_ok(msg: str):
    console.print(f"[bold green]✔[/] {msg}")

def print_warn(msg: str):
    console.print(f"[bold yellow]![/] {msg}")

def print_err(msg: str):
    console.print(f"[bold red]✖[/] {msg}")

def print_info(msg: str):
    console.print(f"[cyan]{msg}[/cyan]")

# -----------------------
# Commands
# -----------------------
def cmd_targets(args) -> int:
    table = Table(title="Build targets")
    table.add_column("Target")
    table.add_column("Description")
    for route, desc in routes().items():
        table.add_row(route, desc)
    console.print(table)
    return 0

def cmd_validate(args) -> int:
    spec = load_spec(args.spec)
    print_ok(f"{args.spec}: {spec.name} {spec.version}-{spec.revision} is valid")
    if spec.targets:
        print_info("targets: " + ", ".join(sorted(spec.targets)))
    return 0

def cmd_plan(args) -> int:
    spec = load_spec(args.spec)
    distro_key, kind = parse_route(args.target)
    client = PlanClient()
    state = get_frontend(client, distro_key, args.platform).plan(kind, spec, distro_key)
    definition = state.marshal()
    if args.json:
        console.print(definition.to_json(indent=2), markup=False, highlight=False, soft_wrap=True)
        return 0
    table = Table(title=f"{spec.name} -> {args.target} ({len(definition.ops)} ops)")
    table.add_column("#", justify="right")
    table.add_column("Digest")
    table.add_column("Type")
    table.add_column("Description")
    for i, op in enumerate(definition.ops):
        desc = definition.metadata.get(op["digest"], {}).get("description", "")
        table.add_row(str(i), op["digest"][7:19], op["type"], desc)
    console.print(table)
    print_info(f"root: {definition.root}")
    return 0

def cmd_debroot(args) -> int:
    spec = load_spec(args.spec)
    distro = get_distro(args.target)
    files = debroot_mod.debroot(spec, args.target, distro, distro.version_id)
    for path in debroot_mod.write_tree(files, args.output):
        print_info(path)
    print_ok(f"wrote {len(files)} files to {args.output}")
    return 0

def cmd_config(args) -> int:
    cfg = config_mod.get_config()
    console.print(yaml.safe_dump(cfg.as_dict(), sort_keys=True), markup=False, highlight=False)
    if args.validate:
        ok, issues = config_mod.validate_config()
        if not ok:
            for issue in issues:
                print_warn(issue)
            return 1
        print_ok("config is valid")
    return 0

# -----------------------
# Argparse wiring
# -----------------------
def make_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(prog="debforge", description="Build .deb packages and images from package specs")
    ap.add_argument("--config", help="config file (default: search $DEBFORGE_CONFIG, ./debforge.yaml, ...)")
    ap.add_argument("--log-level", help="override logging.level")
    sub = ap.add_subparsers(dest="cmd")

    sub.add_parser("targets", help="list build targets")

    p_validate = sub.add_parser("validate", help="validate a spec file")
    p_validate.add_argument("spec")

    p_plan = sub.add_parser("plan", help="show the build graph for a target")
    p_plan.add_argument("spec")
    p_plan.add_argument("--target", required=True, help="route, e.g. jammy/deb")
    p_plan.add_argument("--platform", help="e.g. linux/amd64")
    p_plan.add_argument("--json", action="store_true", help="print the marshalled definition")

    p_debroot = sub.add_parser("debroot", help="write the generated debian/ tree")
    p_debroot.add_argument("spec")
    p_debroot.add_argument("--target", required=True, help="distro key, e.g. jammy")
    p_debroot.add_argument("-o", "--output", required=True)

    p_config = sub.add_parser("config", help="show the merged configuration")
    p_config.add_argument("--validate", action="store_true")
    return ap

COMMANDS = {
    "targets": cmd_targets,
    "validate": cmd_validate,
    "plan": cmd_plan,
    "debroot": cmd_debroot,
    "config": cmd_config,
}

def main(argv: Optional[List[str]] = None) -> int:
    argv = argv if argv is not None else sys.argv[1:]
    parser = make_parser()
    args = parser.parse_args(argv)
    if args.cmd not in COMMANDS:
        parser.print_help()
        return 2

    try:
        if args.config:
            config_mod.reload(args.config)
            reload_logging()
        if args.log_level:
            set_level(args.log_level)
        return COMMANDS[args.cmd](args)
    except ForgeError as e:
        where = f" [{e.stage}]" if e.stage else ""
        print_err(f"{args.cmd} failed{where}: {e}")
        diagnostics = getattr(e, "diagnostics", "")
        if diagnostics:
            console.print(diagnostics, markup=False, highlight=False)
        logger.debug("command %s failed", args.cmd, exc_info=True)
        return 1

if __name__ == "__main__":
    sys.exit(main())
