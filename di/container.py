"""
Deckforge - Dependency Injection Container

Registers async service factories under tokens, resolves their declared
dependency graphs and drives the start/stop lifecycle of every singleton.

Features:
- Singleton and per-resolution (transient) registrations
- Lazy and eager (created on start) singletons
- Cycle detection over declared dependencies before any factory runs
- Per-token serialized singleton construction
- Reverse-creation-order shutdown with per-service failure isolation
- Concurrent aggregated health checks
"""

from __future__ import annotations

import asyncio
import contextvars
import inspect
from dataclasses import dataclass, field
from typing import (
    Any,
    Awaitable,
    Callable,
    Dict,
    Generic,
    Iterable,
    List,
    Optional,
    Set,
    Tuple,
    Type,
    TypeVar,
    Union,
)

from core.errors import CircularDependencyError, ServiceNotRegisteredError
from core.types import ServiceHealthStatus
from observability.logging import StructuredLogger

T = TypeVar("T")

ServiceFactory = Callable[[], Union[Awaitable[T], T]]

# Token names currently being constructed in this task, outermost first
_resolution_chain: contextvars.ContextVar[Tuple[str, ...]] = contextvars.ContextVar(
    "resolution_chain", default=()
)


@dataclass(frozen=True)
class ServiceToken(Generic[T]):
    """Identity of a registrable service; tokens compare by name only."""

    name: str
    type: Optional[Type[T]] = field(default=None, compare=False, hash=False)

    def __str__(self) -> str:
        return self.name


@dataclass(frozen=True)
class ServiceRegistrationOptions:
    singleton: bool = True
    lazy: bool = False
    dependencies: Tuple[ServiceToken, ...] = ()


@dataclass
class ServiceRegistration(Generic[T]):
    """Owned by the container; one per token name."""

    token: ServiceToken[T]
    factory: ServiceFactory[T]
    options: ServiceRegistrationOptions
    instance: Optional[T] = None
    initialized: bool = False


class ServiceContainer:
    """
    Dependency Injection Container.

    Usage:
        container = ServiceContainer(logger)

        container.register(LOGGER, lambda: logger)
        container.register(
            CACHE,
            make_cache,
            dependencies=[LOGGER, METRICS],
        )

        await container.start()
        cache = await container.resolve(CACHE)
        ...
        await container.stop()
    """

    def __init__(self, logger: Optional[StructuredLogger] = None) -> None:
        self._logger = (logger or StructuredLogger()).child({"component": "container"})
        self._registrations: Dict[str, ServiceRegistration[Any]] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._creation_order: List[str] = []
        self._pending_shutdowns: Set[asyncio.Task[None]] = set()
        self._started = False
        self._starting = False

    @property
    def is_started(self) -> bool:
        return self._started

    @property
    def registered_tokens(self) -> List[ServiceToken[Any]]:
        return [registration.token for registration in self._registrations.values()]

    def is_registered(self, token: ServiceToken[Any]) -> bool:
        return token.name in self._registrations

    def live_instances(self) -> Dict[str, Any]:
        return {
            name: registration.instance
            for name, registration in self._registrations.items()
            if registration.instance is not None
        }

    # -------------------------------------------------------------------------
    # Registration
    # -------------------------------------------------------------------------

    def register(
        self,
        token: ServiceToken[T],
        factory: ServiceFactory[T],
        *,
        singleton: bool = True,
        lazy: bool = False,
        dependencies: Iterable[ServiceToken[Any]] = (),
    ) -> "ServiceContainer":
        """
        Register ``factory`` under ``token``.

        Re-registering a token shuts down its live instance in the background.
        """
        dependencies = tuple(dependencies)
        existing = self._registrations.get(token.name)
        if existing is not None and existing.instance is not None:
            self._schedule_shutdown(token.name, existing.instance)

        self._registrations[token.name] = ServiceRegistration(
            token=token,
            factory=factory,
            options=ServiceRegistrationOptions(
                singleton=singleton,
                lazy=lazy,
                dependencies=dependencies,
            ),
        )
        self._logger.debug(
            "Service registered",
            service=token.name,
            singleton=singleton,
            lazy=lazy,
            dependencies=[dep.name for dep in dependencies],
        )
        return self

    async def unregister(self, token: ServiceToken[Any]) -> bool:
        registration = self._registrations.get(token.name)
        if registration is None:
            return False
        if registration.instance is not None:
            await self._shutdown_instance(token.name, registration.instance)
        self._forget(token.name)
        del self._registrations[token.name]
        self._locks.pop(token.name, None)
        self._logger.debug("Service unregistered", service=token.name)
        return True

    def _forget(self, name: str) -> None:
        if name in self._creation_order:
            self._creation_order.remove(name)

    def _schedule_shutdown(self, name: str, instance: Any) -> None:
        self._forget(name)
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self._logger.warn("Replaced instance not shut down: no running loop", service=name)
            return
        task = loop.create_task(self._shutdown_instance(name, instance))
        self._pending_shutdowns.add(task)
        task.add_done_callback(self._pending_shutdowns.discard)

    # -------------------------------------------------------------------------
    # Resolution
    # -------------------------------------------------------------------------

    def _get_registration(self, token: ServiceToken[T]) -> ServiceRegistration[T]:
        registration = self._registrations.get(token.name)
        if registration is None:
            raise ServiceNotRegisteredError(token.name)
        return registration

    def _check_circular_dependencies(self, token: ServiceToken[Any]) -> None:
        """Depth-first walk of declared dependencies; raises on the first cycle."""
        visited: Set[str] = set()
        path: List[str] = []

        def visit(name: str) -> None:
            if name in path:
                raise CircularDependencyError(path[path.index(name):] + [name])
            if name in visited:
                return
            registration = self._registrations.get(name)
            if registration is None:
                raise ServiceNotRegisteredError(name)
            path.append(name)
            for dependency in registration.options.dependencies:
                visit(dependency.name)
            path.pop()
            visited.add(name)

        visit(token.name)

    async def resolve(self, token: ServiceToken[T]) -> T:
        """
        Return the instance for ``token``.

        Raises:
            ServiceNotRegisteredError: The token (or a declared dependency)
                has no registration
            CircularDependencyError: The dependency graph contains a cycle
        """
        return await self._resolve(token, initialize=self._started or self._starting)

    async def _resolve(self, token: ServiceToken[T], initialize: bool) -> T:
        registration = self._get_registration(token)
        singleton = registration.options.singleton

        if singleton and registration.instance is not None:
            if registration.initialized or not initialize:
                return registration.instance

        chain = _resolution_chain.get()
        if token.name in chain:
            raise CircularDependencyError(list(chain[chain.index(token.name):]) + [token.name])
        self._check_circular_dependencies(token)

        if not singleton:
            return await self._create(registration, initialize)

        lock = self._locks.setdefault(token.name, asyncio.Lock())
        async with lock:
            if registration.instance is not None:
                if initialize and not registration.initialized:
                    await self._initialize_instance(token.name, registration.instance)
                    registration.initialized = True
                return registration.instance

            instance = await self._create(registration, initialize)
            registration.instance = instance
            registration.initialized = initialize
            self._creation_order.append(token.name)
            return instance

    async def _create(self, registration: ServiceRegistration[T], initialize: bool) -> T:
        name = registration.token.name
        reset_token = _resolution_chain.set(_resolution_chain.get() + (name,))
        try:
            for dependency in registration.options.dependencies:
                await self._resolve(dependency, initialize)
            result = registration.factory()
            if inspect.isawaitable(result):
                result = await result
        finally:
            _resolution_chain.reset(reset_token)

        if initialize:
            await self._initialize_instance(name, result)
        self._logger.debug("Service created", service=name, initialized=initialize)
        return result

    async def _initialize_instance(self, name: str, instance: Any) -> None:
        initialize = getattr(instance, "initialize", None)
        if callable(initialize):
            result = initialize()
            if inspect.isawaitable(result):
                await result

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def start(self) -> None:
        """Create and initialize every eager singleton. Idempotent."""
        if self._started:
            return
        eager = [
            registration.token
            for registration in self._registrations.values()
            if registration.options.singleton and not registration.options.lazy
        ]
        self._logger.info("Starting service container", eager_services=len(eager))

        self._starting = True
        try:
            await asyncio.gather(*(self._resolve(token, initialize=True) for token in eager))
        except Exception as e:
            self._logger.error("Service container failed to start", error=e)
            raise
        finally:
            self._starting = False

        self._started = True
        self._logger.info("Service container started", live_services=len(self._creation_order))

    async def stop(self) -> None:
        """Shut down live instances in reverse creation order. Idempotent."""
        live = self.live_instances()
        if not self._started and not live and not self._pending_shutdowns:
            return

        self._logger.info("Stopping service container", live_services=len(live))
        for name in reversed(self._creation_order):
            registration = self._registrations.get(name)
            if registration is None or registration.instance is None:
                continue
            await self._shutdown_instance(name, registration.instance)
            registration.instance = None
            registration.initialized = False

        for registration in self._registrations.values():
            registration.instance = None
            registration.initialized = False
        self._creation_order.clear()

        if self._pending_shutdowns:
            await asyncio.gather(*self._pending_shutdowns, return_exceptions=True)
            self._pending_shutdowns.clear()

        self._started = False

    async def _shutdown_instance(self, name: str, instance: Any) -> None:
        shutdown = getattr(instance, "shutdown", None)
        if not callable(shutdown):
            return
        try:
            result = shutdown()
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            self._logger.error("Service shutdown failed", error=e, service=name)

    async def get_health_status(self) -> Dict[str, ServiceHealthStatus]:
        """Health of every live instance; failing checks report unhealthy."""
        live = self.live_instances()
        results = await asyncio.gather(
            *(self._check_health(name, instance) for name, instance in live.items())
        )
        return dict(results)

    async def _check_health(self, name: str, instance: Any) -> Tuple[str, ServiceHealthStatus]:
        health_check = getattr(instance, "health_check", None)
        if not callable(health_check):
            return name, ServiceHealthStatus.unhealthy("Service does not report health")
        try:
            status = await health_check()
        except Exception as e:
            self._logger.warn("Health check failed", service=name, error=str(e))
            return name, ServiceHealthStatus.unhealthy(f"Health check failed: {e}")
        return name, status
