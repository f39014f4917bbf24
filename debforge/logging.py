# debforge/logging.py
# -*- coding: utf-8 -*-
"""
debforge logging

All pipeline loggers hang off the "debforge" logger and carry a forge_module
field (worker, installer, rootfs, ...). Handlers follow the logging section
of the config: stderr with ANSI colors, an optional size-rotated file, and an
optional JSON-lines file with one object per record. module_levels raises the
threshold for single modules, e.g. {"harness": "WARNING"}.
"""

from __future__ import annotations
import sys
import json
import time
import logging
import logging.handlers
import threading
from pathlib import Path
from typing import Dict, Any, List, Optional

from debforge.config import get_config

_logger = logging.getLogger("debforge.logging")

# ----------------------
# Color formatter
# ----------------------
class ColorFormatter(logging.Formatter):
    COLORS = {
        logging.DEBUG: "\033[37m",    # light gray
        logging.INFO: "\033[36m",     # cyan
        logging.WARNING: "\033[33m",  # yellow
        logging.ERROR: "\033[31m",    # red
        logging.CRITICAL: "\033[41;37m", # white on red
    }
    RESET = "\033[0m"

    def __init__(self, fmt: Optional[str] = None, datefmt: Optional[str] = None, color: bool = True):
        super().__init__(fmt=fmt, datefmt=datefmt)
        self.color = color

    def format(self, record):
        msg = super().format(record)
        if self.color:
            color = self.COLORS.get(record.levelno, "")
            return f"{color}{msg}{self.RESET}"
        return msg

# ----------------------
# One JSON object per line
# ----------------------
class JSONLineFormatter(logging.Formatter):
    def format(self, record):
        obj = {
            "timestamp": time.time(),
            "level": record.levelname,
            "module": getattr(record, "forge_module", record.name),
            "message": record.getMessage(),
        }
        if record.exc_info:
            obj["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(obj, ensure_ascii=False)

# ----------------------
# Per-module thresholds
# ----------------------
class ModuleLevelFilter(logging.Filter):
    def __init__(self, module_levels: Dict[str, str]):
        super().__init__()
        self.module_levels = {m: getattr(logging, str(lvl).upper(), logging.INFO) for m, lvl in (module_levels or {}).items()}

    def filter(self, record):
        mod = getattr(record, "forge_module", None)
        if mod and mod in self.module_levels:
            return record.levelno >= self.module_levels[mod]
        return True

class _ModuleDefaultFilter(logging.Filter):
    # records logged without the adapter still need forge_module for the format string
    def filter(self, record):
        if not hasattr(record, "forge_module"):
            record.forge_module = record.name
        return True

# ----------------------
# ForgeLogger (singleton)
# ----------------------
class ForgeLogger:
    _instance = None
    _singleton_lock = threading.Lock()

    def __new__(cls):
        with cls._singleton_lock:
            if cls._instance is None:
                cls._instance = super().__new__(cls)
                cls._instance._inited = False
        return cls._instance

    def __init__(self):
        if self._inited:
            return
        self._lock = threading.RLock()
        self._root = logging.getLogger("debforge")
        self._root.propagate = False
        self._handlers: List[logging.Handler] = []
        self._module_filter: Optional[ModuleLevelFilter] = None
        self._configured = False
        self._inited = True

    def _ensure_configured(self):
        if not self._configured:
            self.reload_config()

    def _apply_config(self, cfg: Dict[str, Any]):
        with self._lock:
            for h in list(self._handlers):
                self._root.removeHandler(h)
                h.close()
            self._handlers.clear()
            if self._module_filter is not None:
                self._root.removeFilter(self._module_filter)

            self._module_filter = ModuleLevelFilter(cfg.get("module_levels", {}) or {})
            defaults = _ModuleDefaultFilter()

            fmt = cfg.get("format") or "[%(asctime)s] [%(levelname)s] [%(forge_module)s] %(message)s"
            datefmt = cfg.get("datefmt", "%H:%M:%S")
            level = getattr(logging, str(cfg.get("level", "INFO")).upper(), logging.INFO)

            # stderr
            console_cfg = cfg.get("console", {"enabled": True})
            if console_cfg.get("enabled", True):
                ch = logging.StreamHandler(sys.stderr)
                ch.setLevel(level)
                ch.setFormatter(ColorFormatter(fmt, datefmt=datefmt, color=bool(cfg.get("color", True))))
                self._handlers.append(ch)

            # size-rotated file
            if cfg.get("file"):
                file_path = Path(cfg["file"]).expanduser()
                file_path.parent.mkdir(parents=True, exist_ok=True)
                max_bytes = cfg.get("max_size_bytes") or 10 * 1024 * 1024
                fh = logging.handlers.RotatingFileHandler(str(file_path), maxBytes=max_bytes, backupCount=int(cfg.get("backups", 5)), encoding="utf-8")
                fh.setLevel(getattr(logging, str(cfg.get("file_level", "DEBUG")).upper(), logging.DEBUG))
                fh.setFormatter(logging.Formatter(fmt, datefmt=datefmt))
                self._handlers.append(fh)

            # JSON lines
            jsonl_cfg = cfg.get("jsonl", {}) or {}
            if jsonl_cfg.get("enabled"):
                path = Path(jsonl_cfg.get("path", "~/.debforge/transparency.jsonl")).expanduser()
                path.parent.mkdir(parents=True, exist_ok=True)
                jh = logging.FileHandler(str(path), encoding="utf-8")
                jh.setLevel(getattr(logging, str(jsonl_cfg.get("level", "INFO")).upper(), logging.INFO))
                jh.setFormatter(JSONLineFormatter())
                self._handlers.append(jh)

            for h in self._handlers:
                h.addFilter(defaults)
                self._root.addHandler(h)
            self._root.addFilter(self._module_filter)
            self._root.setLevel(min([level] + [h.level for h in self._handlers]))
            self._configured = True

    def reload_config(self):
        """Re-read the logging section of the central config and re-apply it."""
        self._apply_config(get_config().merged.get("logging", {}) or {})

    def set_level(self, level: str):
        cfg = dict(get_config().merged.get("logging", {}) or {})
        cfg["level"] = level
        self._apply_config(cfg)

    def get_logger(self, module_name: str) -> logging.LoggerAdapter:
        """Return a LoggerAdapter that injects 'forge_module' into records."""
        self._ensure_configured()
        return logging.LoggerAdapter(self._root, {"forge_module": module_name})

# ----------------------
# Public factory
# ----------------------
_GLOBAL_LOGGER = ForgeLogger()

def get_logger(module: str) -> logging.LoggerAdapter:
    return _GLOBAL_LOGGER.get_logger(module)

def reload_config():
    return _GLOBAL_LOGGER.reload_config()

def set_level(level: str):
    return _GLOBAL_LOGGER.set_level(level)
