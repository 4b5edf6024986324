"""
Provider Strategies
Unified interface for driving the verification portals behind each service.
Supports: JAMB, WAEC, NECO, NABTEB, NBAIS, BVN (NIBSS), NIN (NIMC), NPC.
"""

from typing import Dict, Optional

from core.models import ServiceType

from .base import ProviderStrategy, parse_score
from .exam_results import ExamResultStrategy, JambStrategy
from .identity import IdentityPortalStrategy, identity_strategies


# Service type -> provider whose portal config it uses
PROVIDER_FOR_SERVICE = {
    ServiceType.BVN_RETRIEVAL.value: "bvn",
    ServiceType.BVN_DIGITAL_CARD.value: "bvn",
    ServiceType.BVN_MODIFY.value: "bvn",
    ServiceType.NIN_LOOKUP.value: "nin",
    ServiceType.NIN_PHONE.value: "nin",
    ServiceType.LOST_NIN.value: "nin",
    ServiceType.JAMB_SCORE.value: "jamb",
    ServiceType.WAEC_RESULT.value: "waec",
    ServiceType.NECO_RESULT.value: "neco",
    ServiceType.NABTEB_RESULT.value: "nabteb",
    ServiceType.NBAIS_RESULT.value: "nbais",
    ServiceType.BIRTH_ATTESTATION.value: "npc",
}


def build_registry(config_store=None) -> Dict[str, ProviderStrategy]:
    """Map every service type to the strategy that serves it."""
    strategies = [
        JambStrategy(config_store),
        ExamResultStrategy("waec", ServiceType.WAEC_RESULT.value, config_store),
        ExamResultStrategy("neco", ServiceType.NECO_RESULT.value, config_store),
        ExamResultStrategy("nabteb", ServiceType.NABTEB_RESULT.value, config_store),
        ExamResultStrategy("nbais", ServiceType.NBAIS_RESULT.value, config_store),
        *identity_strategies(config_store),
    ]
    registry = {}
    for strategy in strategies:
        for service_type in strategy.service_types:
            registry[service_type] = strategy
    return registry


_registry: Optional[Dict[str, ProviderStrategy]] = None


def get_strategy(service_type: str) -> Optional[ProviderStrategy]:
    """Strategy for a service type, or None if no portal serves it."""
    global _registry
    if _registry is None:
        _registry = build_registry()
    return _registry.get(service_type)


__all__ = [
    "ProviderStrategy",
    "JambStrategy",
    "ExamResultStrategy",
    "IdentityPortalStrategy",
    "PROVIDER_FOR_SERVICE",
    "build_registry",
    "get_strategy",
    "parse_score",
]
