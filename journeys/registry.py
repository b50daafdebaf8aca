"""
Casework - Journey Registry

Holds the journey definitions the executor consults at transition
time. Journeys are plain data loaded from YAML: a global set shared by
every tenant plus optional per-tenant overrides with the same key.

    journeys:
      - key: content
        states: [CRIAR, PRODUCAO, APROVACAO]
        closing_states: [APROVACAO]
        transition_actions:
          "CRIAR->PRODUCAO":
            - {kind: create_task, title: "Produzir peça"}
    tenants:
      acme:
        - key: content
          states: [...]
"""

from __future__ import annotations

import logging
import threading
from pathlib import Path
from typing import Any, Iterable

import yaml

from core.errors import NotFound, ValidationError
from journeys.types import UNCLASSIFIED, Case, Journey

logger = logging.getLogger("casework.registry")


class JourneyRegistry:
    """
    Tenant-aware lookup of journey definitions.

    Read-only from the executor's point of view; registration happens at
    startup or through an administrative path.
    """

    def __init__(self):
        self._global: dict[str, Journey] = {}
        self._by_tenant: dict[tuple[str, str], Journey] = {}
        self._lock = threading.Lock()

    def register(self, journey: Journey):
        with self._lock:
            if journey.tenant_id:
                self._by_tenant[(journey.tenant_id, journey.key)] = journey
            else:
                self._global[journey.key] = journey
        logger.debug("Journey registered: %s (tenant=%s)", journey.key, journey.tenant_id)

    def get(self, tenant_id: str, key: str) -> Journey:
        """Tenant override first, then the global definition."""
        journey = self._by_tenant.get((tenant_id, key)) or self._global.get(key)
        if journey is None:
            raise NotFound(f"Unknown journey {key!r}", journey_key=key)
        return journey

    def find(self, tenant_id: str, key: str) -> Journey | None:
        try:
            return self.get(tenant_id, key)
        except NotFound:
            return None

    def list_keys(self, tenant_id: str | None = None) -> list[str]:
        keys = set(self._global)
        if tenant_id:
            keys.update(k for (t, k) in self._by_tenant if t == tenant_id)
        return sorted(keys)

    def __len__(self) -> int:
        return len(self._global) + len(self._by_tenant)

    # ── Loading ─────────────────────────────────────────────────

    def load_dict(self, data: dict[str, Any]) -> int:
        count = 0
        for raw in data.get("journeys") or []:
            self.register(Journey.from_dict(raw))
            count += 1
        for tenant_id, journeys in (data.get("tenants") or {}).items():
            for raw in journeys or []:
                self.register(Journey.from_dict(raw, tenant_id=str(tenant_id)))
                count += 1
        return count

    def load_file(self, path: str | Path) -> int:
        path = Path(path)
        if not path.exists():
            raise ValidationError(f"Journey file not found: {path}")
        with open(path) as f:
            data = yaml.safe_load(f) or {}
        count = self.load_dict(data)
        logger.info("Loaded %d journeys from %s", count, path)
        return count

    @classmethod
    def from_config(cls, config) -> JourneyRegistry:
        """Build from ``journeys.file`` plus any inline ``journeys.definitions``."""
        registry = cls()
        journeys_file = config.get("journeys.file")
        if journeys_file:
            registry.load_file(config.resolve_path(journeys_file))
        inline = config.get("journeys.definitions")
        if inline:
            registry.load_dict({"journeys": inline})
        return registry

    # ── Read-side helpers ───────────────────────────────────────

    @staticmethod
    def classify_state(journey: Journey, state: str) -> str:
        """Configured state as-is; anything else lands in the unclassified bucket."""
        return state if journey.has_state(state) else UNCLASSIFIED

    def board(self, journey: Journey, cases: Iterable[Case]) -> dict[str, list[Case]]:
        """
        Group cases by state in the journey's declared order.

        Cases whose stored state drifted from the configuration are kept
        under ``__unclassified__`` so they stay visible.
        """
        columns: dict[str, list[Case]] = {s: [] for s in journey.states}
        columns[UNCLASSIFIED] = []
        for case in cases:
            columns[self.classify_state(journey, case.state)].append(case)
        return columns
