"""
Deckforge - Dependency Injection

Token-keyed service container with async factories, declared
dependencies, cycle detection and lifecycle management.

Usage:
    from di import ServiceContainer, ServiceToken

    CARD_INDEX = ServiceToken("CardIndex", CardIndex)

    container = ServiceContainer()
    container.register(CARD_INDEX, build_card_index, lazy=True)
    index = await container.resolve(CARD_INDEX)
"""

from di.container import (
    ServiceContainer,
    ServiceFactory,
    ServiceRegistration,
    ServiceRegistrationOptions,
    ServiceToken,
)

__all__ = [
    "ServiceContainer",
    "ServiceFactory",
    "ServiceRegistration",
    "ServiceRegistrationOptions",
    "ServiceToken",
]
