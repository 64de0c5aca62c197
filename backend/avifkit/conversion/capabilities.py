"""Detect which backend can produce each target format on this host."""
import logging
from typing import Iterable, Mapping, Optional

from sqlalchemy.exc import SQLAlchemyError

from avifkit import config as app_config
from avifkit.conversion.backends import BACKENDS, PROBE_ORDER, BackendAdapter
from avifkit.conversion.models import Capability, TargetFormat
from avifkit.db import delete_cached_capabilities, get_cached_capability, set_cached_capability

logger = logging.getLogger("avifkit.capabilities")


class CapabilityDetector:
    """Per-format verdicts held for the worker's lifetime and in the durable cache table."""

    def __init__(
        self,
        backends: Optional[Mapping[Capability, BackendAdapter]] = None,
        order: Iterable[Capability] = PROBE_ORDER,
        ttl_seconds: int = app_config.CAPABILITY_CACHE_SECONDS,
    ):
        self.backends = dict(backends if backends is not None else BACKENDS)
        self.order = tuple(order)
        self.ttl_seconds = ttl_seconds
        self._methods: dict[TargetFormat, Capability] = {}

    def detect(self, fmt) -> Capability:
        fmt = TargetFormat.parse(fmt)
        cached = self._methods.get(fmt)
        if cached is not None:
            return cached

        stored = self._load(fmt)
        if stored is not None:
            self._methods[fmt] = stored
            return stored

        method = self._probe_all(fmt)
        self._store(fmt, method)
        self._methods[fmt] = method
        logger.info("Detected %s method: %s", fmt.value, method.value)
        return method

    def backend_for(self, capability: Capability) -> Optional[BackendAdapter]:
        return self.backends.get(capability)

    def clear(self) -> dict[str, str]:
        """Forget every verdict (memory and durable) and detect again right away."""
        self._methods.clear()
        try:
            delete_cached_capabilities()
        except SQLAlchemyError as e:
            logger.warning("Could not clear capability cache: %s", e)
        return {fmt.value: self.detect(fmt).value for fmt in TargetFormat}

    def snapshot(self) -> dict[str, str]:
        return {fmt.value: self.detect(fmt).value for fmt in TargetFormat}

    def _probe_all(self, fmt: TargetFormat) -> Capability:
        for capability in self.order:
            backend = self.backends.get(capability)
            if backend is not None and self._probe(backend, fmt):
                return capability
        return Capability.NONE

    @staticmethod
    def _probe(backend: BackendAdapter, fmt: TargetFormat) -> bool:
        # a probe that blows up just means the strategy is unusable here
        try:
            return bool(backend.probe(fmt.value))
        except Exception as e:
            logger.debug("%r cannot produce %s: %s", backend, fmt.value, e)
            return False

    def _load(self, fmt: TargetFormat) -> Optional[Capability]:
        try:
            value = get_cached_capability(fmt.value)
        except SQLAlchemyError as e:
            logger.warning("Capability cache unavailable: %s", e)
            return None
        if value is None:
            return None
        try:
            return Capability(value)
        except ValueError:
            logger.warning("Ignoring unknown cached capability %r for %s", value, fmt.value)
            return None

    def _store(self, fmt: TargetFormat, method: Capability) -> None:
        try:
            set_cached_capability(fmt.value, method.value, self.ttl_seconds)
        except SQLAlchemyError as e:
            logger.warning("Could not persist capability for %s: %s", fmt.value, e)
