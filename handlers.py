# handlers.py
# Job-kind handler registry and the collaborator capabilities handlers call into.
import importlib
import logging
from typing import Any, Callable, Dict, Optional, Protocol

from errors import HandlerError
from models import JobKind

logger = logging.getLogger(__name__)

Handler = Callable[[Dict[str, Any]], None]


class MetadataProvider(Protocol):
    def refresh_metadata(self, identifier) -> None:
        """Refresh one media item's metadata; raise ProviderError on failure."""


class HandlerRegistry:
    """Explicit JobKind -> handler mapping, fixed at startup."""

    def __init__(self, handlers: Optional[Dict[JobKind, Handler]] = None):
        self._handlers: Dict[JobKind, Handler] = {}
        for kind, handler in (handlers or {}).items():
            self.register(kind, handler)

    def register(self, kind, handler: Handler) -> None:
        self._handlers[JobKind.parse(kind)] = handler

    def get(self, kind) -> Handler:
        kind = JobKind.parse(kind)
        try:
            return self._handlers[kind]
        except KeyError:
            raise HandlerError(f"no handler registered for {kind.value}") from None

    def kinds(self):
        return set(self._handlers)

    def __contains__(self, kind):
        return JobKind.parse(kind) in self._handlers


def refresh_metadata_handler(provider: MetadataProvider) -> Handler:
    def handle(payload: Dict[str, Any]) -> None:
        if "id" not in payload:
            raise HandlerError("RefreshMetadata payload is missing 'id'")
        provider.refresh_metadata(payload["id"])

    return handle


def build_registry(provider: MetadataProvider, cleanup: Optional[Handler] = None,
                   summary: Optional[Handler] = None, pull: Optional[Handler] = None) -> HandlerRegistry:
    registry = HandlerRegistry({JobKind.REFRESH_METADATA: refresh_metadata_handler(provider)})
    for kind, handler in ((JobKind.USER_CLEANUP, cleanup),
                          (JobKind.CALCULATE_SUMMARY, summary),
                          (JobKind.PULL_INTEGRATIONS, pull)):
        if handler is not None:
            registry.register(kind, handler)
    return registry


class LoggingMetadataProvider:
    """Stand-in provider for running a worker with no backend attached."""

    def refresh_metadata(self, identifier) -> None:
        logger.info("Refreshing metadata for %s", identifier)


def _log_only(kind: JobKind) -> Handler:
    def handle(payload: Dict[str, Any]) -> None:
        logger.info("%s ran with payload %s", kind.value, payload)

    return handle


def default_registry() -> HandlerRegistry:
    return build_registry(
        LoggingMetadataProvider(),
        cleanup=_log_only(JobKind.USER_CLEANUP),
        summary=_log_only(JobKind.CALCULATE_SUMMARY),
        pull=_log_only(JobKind.PULL_INTEGRATIONS),
    )


def load_registry(target_path: str) -> HandlerRegistry:
    """Resolve "module:attr" to a registry, calling attr if it is a factory."""
    module_name, _, attr = target_path.partition(":")
    if not module_name or not attr:
        raise ValueError(f"handlers must look like 'module:attr', got {target_path!r}")
    target = getattr(importlib.import_module(module_name), attr)
    registry = target() if callable(target) and not isinstance(target, HandlerRegistry) else target
    if not isinstance(registry, HandlerRegistry):
        raise TypeError(f"{target_path} did not produce a HandlerRegistry")
    return registry
