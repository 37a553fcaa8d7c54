from __future__ import annotations

import json
import os
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional

import structlog
import yaml
from jsonschema import ValidationError, validate

log = structlog.get_logger("lpu.repositories.rule_file_store")

SCHEMA_PATH = Path(__file__).resolve().parents[1] / "schemas" / "rule_file.schema.json"


@dataclass(frozen=True)
class LoadedRuleFile:
    version: str
    tenant_id: Optional[str]
    rules: List[Dict[str, Any]]
    mtime_ns: int


class YamlRuleStore:
    """
    Rule store backed by a YAML file (hot reload, thread-safe).

    - Keeps last known-good file active
    - On each read: checks mtime_ns; if changed -> reload + schema validate
    - If reload fails: logs error and keeps old active rules
    Per-rule validation is left to the engine, so one bad rule never hides
    the rest of the file.
    """

    def __init__(self, yaml_path: str):
        self.yaml_path = yaml_path
        self._lock = threading.Lock()
        with SCHEMA_PATH.open("r", encoding="utf-8") as f:
            self._schema = json.load(f)

        # eager initial load (fail-fast if missing)
        self._loaded: Optional[LoadedRuleFile] = self._load_from_disk_or_raise()

    # --- engine port ---

    def list_active_rules(self, tenant_id: str, price_list_id: str) -> List[Dict[str, Any]]:
        loaded = self.get()
        out = []
        for r in loaded.rules:
            rule = dict(r)
            rule.setdefault("tenantId", loaded.tenant_id or tenant_id)
            if rule["tenantId"] != tenant_id or not rule.get("isActive", True):
                continue
            scope = rule.get("priceListIds") or []
            if scope and price_list_id not in scope:
                continue
            out.append(rule)
        return out

    # --- hot reload ---

    def get(self) -> LoadedRuleFile:
        try:
            current_mtime = self._stat_mtime_ns()
        except FileNotFoundError:
            if self._loaded is None:
                raise
            log.warning("rule_file_missing", path=self.yaml_path, keeping="previous")
            return self._loaded

        loaded = self._loaded
        if loaded is not None and current_mtime == loaded.mtime_ns:
            return loaded

        with self._lock:
            loaded = self._loaded
            # double-check after acquiring lock
            if loaded is not None and current_mtime == loaded.mtime_ns:
                return loaded

            try:
                new_loaded = self._load_from_disk_or_raise(expected_mtime_ns=current_mtime)
            except (OSError, yaml.YAMLError, ValidationError) as e:
                if loaded is None:
                    raise
                log.error("rule_file_reload_failed", path=self.yaml_path, error=repr(e))
                return loaded

            self._loaded = new_loaded
            log.info(
                "rule_file_reloaded",
                path=self.yaml_path,
                mtime_ns=new_loaded.mtime_ns,
                rules=len(new_loaded.rules),
            )
            return new_loaded

    def _stat_mtime_ns(self) -> int:
        return os.stat(self.yaml_path).st_mtime_ns

    def _load_from_disk_or_raise(self, expected_mtime_ns: Optional[int] = None) -> LoadedRuleFile:
        if expected_mtime_ns is None:
            expected_mtime_ns = self._stat_mtime_ns()

        with open(self.yaml_path, "r", encoding="utf-8") as f:
            raw: Dict[str, Any] = yaml.safe_load(f) or {}

        validate(instance=raw, schema=self._schema)
        return LoadedRuleFile(
            version=str(raw.get("ruleSetVersion") or "v1"),
            tenant_id=raw.get("tenantId"),
            rules=list(raw.get("rules") or []),
            mtime_ns=expected_mtime_ns,
        )
