"""
Generator Registry

Named, ordered collection of candidate generators.
"""

from __future__ import annotations

from typing import Dict, Iterable, List, Optional

from loguru import logger

from decision.models import PurchaseOrder

from .base import CandidateGenerator
from .builtin import DetectorSettings, builtin_generators


class GeneratorRegistry:
    """
    Registry for candidate generators.

    Generators run in registration order.

    Usage:
        registry = GeneratorRegistry.with_builtins(purchase_orders)
        registry.unregister('currency')
        registry.register(MyDetector())
        engine = DecisionEngine(..., generators=registry.generators())
    """

    def __init__(self):
        self._generators: Dict[str, CandidateGenerator] = {}

    @classmethod
    def with_builtins(
        cls,
        purchase_orders: Iterable[PurchaseOrder] = (),
        settings: Optional[DetectorSettings] = None,
    ) -> 'GeneratorRegistry':
        registry = cls()
        for generator in builtin_generators(purchase_orders, settings):
            registry.register(generator)
        return registry

    def register(self, generator: CandidateGenerator, overwrite: bool = False) -> None:
        """
        Register a generator under its name.

        Raises:
            ValueError: If the name is taken and overwrite=False
        """
        if generator.name in self._generators and not overwrite:
            raise ValueError(f"Generator '{generator.name}' already registered")
        self._generators[generator.name] = generator
        logger.debug(f"Registered candidate generator: {generator.name}")

    def unregister(self, name: str) -> bool:
        if name in self._generators:
            del self._generators[name]
            logger.debug(f"Unregistered candidate generator: {name}")
            return True
        return False

    def get(self, name: str) -> Optional[CandidateGenerator]:
        return self._generators.get(name)

    def list_names(self) -> List[str]:
        return list(self._generators.keys())

    def generators(self) -> List[CandidateGenerator]:
        return list(self._generators.values())

    def __contains__(self, name: str) -> bool:
        return name in self._generators

    def __len__(self) -> int:
        return len(self._generators)
