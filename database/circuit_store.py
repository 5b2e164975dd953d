"""
Circuit-state persistence, so open breakers survive a restart.

    save(category, state)
    load(category) -> state | None
"""
from __future__ import annotations

import json
import structlog
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional

from core.circuit_breaker import CircuitState

logger = structlog.get_logger()


class CircuitStateStore(ABC):
    @abstractmethod
    async def save(self, category: str, state: CircuitState) -> None:
        ...

    @abstractmethod
    async def load(self, category: str) -> Optional[CircuitState]:
        ...


class InMemoryCircuitStateStore(CircuitStateStore):
    def __init__(self):
        self._states: dict[str, dict] = {}

    async def save(self, category: str, state: CircuitState) -> None:
        self._states[category] = state.to_dict()

    async def load(self, category: str) -> Optional[CircuitState]:
        data = self._states.get(category)
        return CircuitState.from_dict(data) if data else None


class FileCircuitStateStore(InMemoryCircuitStateStore):
    def __init__(self, data_dir: str = "./data", filename: str = "circuits.json"):
        super().__init__()
        self._path = Path(data_dir) / filename
        self._path.parent.mkdir(parents=True, exist_ok=True)
        if self._path.exists():
            try:
                with open(self._path, "r") as f:
                    self._states = json.load(f)
            except (OSError, json.JSONDecodeError) as e:
                logger.warning("circuit_store_load_error", path=str(self._path), error=str(e))

    async def save(self, category: str, state: CircuitState) -> None:
        await super().save(category, state)
        self._flush()

    def _flush(self) -> None:
        tmp = self._path.with_suffix(".tmp")
        with open(tmp, "w") as f:
            json.dump(self._states, f, indent=2)
        tmp.replace(self._path)


def create_circuit_store(backend: str = "memory", data_dir: str = "./data") -> CircuitStateStore:
    if backend == "file":
        return FileCircuitStateStore(data_dir=data_dir)
    return InMemoryCircuitStateStore()
