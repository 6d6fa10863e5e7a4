"""
Registry of named checkpoint savers with default selection and failover, plus age-based cleanup.
"""

import asyncio
import threading
from collections import Counter
from typing import Any, Dict, List, Optional

from ..exceptions import InvalidInputError, SaverNotFoundError
from ..models.checkpoint import CheckpointSaverRegistration
from ..utils.config import CheckpointConfig
from ..utils.logging_config import get_logger
from ..utils.timestamp_utils import utc_now
from .checkpoint_savers import create_saver

logger = get_logger(__name__)

# Preferred fallback when the default saver is removed
FALLBACK_SAVER_TYPE = 'memory'


def saver_type_of(saver: Any) -> str:
    """Backend type of a saver: its ``saver_type`` attribute, else its class name."""
    saver_type = getattr(saver, 'saver_type', None)
    return saver_type if isinstance(saver_type, str) and saver_type else type(saver).__name__.lower()


def _require_max_age(max_age: Any) -> None:
    if isinstance(max_age, bool) or not isinstance(max_age, (int, float)) or max_age < 0:
        raise InvalidInputError('max_age must be a non-negative number of seconds', operation='cleanup_checkpoints',
                                context={'max_age': max_age})


class CheckpointRegistry:
    """Named checkpoint savers, exactly one of which is the default while any are registered.

    Mutations and reads go through a re-entrant lock so readers always see a consistent
    map. Closing a saver is best-effort: close errors are logged, never raised.
    """

    def __init__(self, config: Optional[CheckpointConfig] = None):
        self.config = config or CheckpointConfig()
        self._savers: Dict[str, CheckpointSaverRegistration] = {}
        self._default: Optional[str] = None
        self._lock = threading.RLock()
        self._cleaned_total = 0
        self._last_cleanup_at = None
        self._cleanup_task: Optional[asyncio.Task] = None

    def register(self, name: str, saver: Any, is_default: bool = False) -> None:
        """
        Register a saver under ``name``.

        The first saver registered becomes the default when none is set. Registering an
        existing name replaces the previous saver without closing it.

        Raises:
            InvalidInputError: If the name is empty or the saver is None
        """
        if not isinstance(name, str) or not name.strip():
            raise InvalidInputError('Saver name must be a non-empty string', operation='register_saver')
        if saver is None:
            raise InvalidInputError('Saver must not be None', operation='register_saver', context={'name': name})

        with self._lock:
            if name in self._savers:
                logger.warning(f"Checkpoint saver '{name}' already registered, replacing it")
            self._savers[name] = CheckpointSaverRegistration(name=name, saver=saver, saver_type=saver_type_of(saver))
            if is_default or self._default is None or self._default not in self._savers:
                self._set_default(name)
            else:
                self._set_default(self._default)

        logger.info(f"Registered checkpoint saver '{name}' ({saver_type_of(saver)}){' as default' if is_default else ''}")

    def _set_default(self, name: Optional[str]) -> None:
        for registration in self._savers.values():
            registration.is_default = registration.name == name
        self._default = name

    def get(self, name: Optional[str] = None) -> Any:
        """
        Get a saver by name, or the default saver.

        Raises:
            SaverNotFoundError: If the saver does not exist
        """
        with self._lock:
            target = name if name is not None else self._default
            registration = self._savers.get(target) if target is not None else None
            if registration is None:
                raise SaverNotFoundError(name, list(self._savers))
            return registration.saver

    def has(self, name: str) -> bool:
        with self._lock:
            return name in self._savers

    def available_savers(self) -> List[str]:
        with self._lock:
            return list(self._savers)

    def get_default_saver_name(self) -> Optional[str]:
        with self._lock:
            return self._default

    def set_default(self, name: str) -> None:
        with self._lock:
            if name not in self._savers:
                raise SaverNotFoundError(name, list(self._savers))
            self._set_default(name)
        logger.info(f"Default checkpoint saver set to '{name}'")

    def _select_fallback(self) -> Optional[str]:
        for registration in self._savers.values():
            if registration.saver_type == FALLBACK_SAVER_TYPE:
                return registration.name
        return next(iter(self._savers), None)

    async def _close_saver(self, registration: CheckpointSaverRegistration) -> None:
        close = getattr(registration.saver, 'close', None)
        if close is None:
            return
        try:
            result = close()
            if hasattr(result, '__await__'):
                await result
        except Exception as e:
            logger.warning(f"Error closing checkpoint saver '{registration.name}': {e}")

    async def remove(self, name: str) -> bool:
        """
        Close and unregister a saver. If it was the default, a saver of type 'memory' is
        preferred as the new default, else the first remaining one.

        Returns:
            False if no saver was registered under ``name``
        """
        with self._lock:
            registration = self._savers.pop(name, None)
            if registration is None:
                return False
            if self._default == name:
                self._set_default(self._select_fallback())
                new_default = self._default
                logger.info(f"Default checkpoint saver '{name}' removed, new default: {new_default}")

        await self._close_saver(registration)
        logger.info(f"Removed checkpoint saver '{name}'")
        return True

    def get_saver_info(self, name: Optional[str] = None) -> Dict[str, Any]:
        with self._lock:
            target = name if name is not None else self._default
            registration = self._savers.get(target) if target is not None else None
            if registration is None:
                raise SaverNotFoundError(name, list(self._savers))
            return {
                'name': registration.name,
                'type': registration.saver_type,
                'is_default': registration.is_default,
                'registered_at': registration.registered_at.isoformat(),
            }

    def savers_by_type(self, saver_type: str) -> List[str]:
        with self._lock:
            return [r.name for r in self._savers.values() if r.saver_type == saver_type]

    def get_stats(self) -> Dict[str, Any]:
        with self._lock:
            return {
                'total_savers': len(self._savers),
                'default_saver': self._default,
                'saver_types': dict(Counter(r.saver_type for r in self._savers.values())),
                'savers': list(self._savers),
            }

    def validate(self) -> Dict[str, Any]:
        """Report structural issues (no savers, no default) and warnings (duplicate backend types)."""
        issues = []
        warnings = []
        with self._lock:
            if not self._savers:
                issues.append('No checkpoint savers registered')
            elif self._default is None or self._default not in self._savers:
                issues.append('No default checkpoint saver set')

            for saver_type, count in Counter(r.saver_type for r in self._savers.values()).items():
                if count > 1:
                    warnings.append(f"{count} savers share backend type '{saver_type}'")

        return {'valid': not issues, 'issues': issues, 'warnings': warnings}

    async def cleanup(self, max_age: float, name: Optional[str] = None, exclude_threads: Optional[List[str]] = None,
                      dry_run: bool = False) -> int:
        """
        Delete checkpoints older than ``max_age`` seconds from one saver.

        Args:
            max_age: Age threshold in seconds
            name: Saver name, the default saver if None
            exclude_threads: Threads left untouched
            dry_run: Count matching checkpoints without deleting them

        Returns:
            Number of checkpoints deleted, or that would be with ``dry_run``. Savers
            without a ``cleanup`` hook report 0.

        Raises:
            InvalidInputError: If ``max_age`` is not a non-negative number
            SaverNotFoundError: If the saver does not exist
        """
        _require_max_age(max_age)
        with self._lock:
            target = name if name is not None else self._default
            saver = self.get(name)

        hook = getattr(saver, 'cleanup', None)
        if hook is None:
            logger.warning(f"Checkpoint saver '{target}' does not support cleanup")
            return 0

        removed = await hook(max_age, exclude_threads=exclude_threads, dry_run=dry_run)
        if dry_run:
            logger.info(f"Checkpoint cleanup dry run on '{target}': {removed} checkpoints older than {max_age}s")
            return removed
        with self._lock:
            self._cleaned_total += removed
            self._last_cleanup_at = utc_now()
        logger.info(f"Removed {removed} checkpoints older than {max_age}s from '{target}'")
        return removed

    async def cleanup_all(self, max_age: float, exclude_threads: Optional[List[str]] = None,
                          dry_run: bool = False) -> Dict[str, int]:
        """Run ``cleanup`` on every saver. A saver whose cleanup fails is logged and left out of the result."""
        _require_max_age(max_age)
        results = {}
        for name in self.available_savers():
            try:
                results[name] = await self.cleanup(max_age, name=name, exclude_threads=exclude_threads, dry_run=dry_run)
            except Exception as e:
                logger.error(f"Checkpoint cleanup failed for saver '{name}': {e}")
        return results

    def get_cleanup_stats(self) -> Dict[str, Any]:
        with self._lock:
            return {
                'total_cleaned': self._cleaned_total,
                'last_cleanup_at': self._last_cleanup_at.isoformat() if self._last_cleanup_at else None,
                'scheduled': self._cleanup_task is not None and not self._cleanup_task.done(),
            }

    async def _probe_saver(self, name: str, saver: Any) -> bool:
        hook = getattr(saver, 'health_check', None)
        if hook is None:
            return True
        try:
            result = hook()
            if hasattr(result, '__await__'):
                result = await result
            return bool(result)
        except Exception as e:
            logger.warning(f"Health check failed for checkpoint saver '{name}': {e}")
            return False

    async def health_check(self, name: Optional[str] = None) -> bool:
        """
        Probe one saver's backing storage, the default saver if ``name`` is None.

        Savers without a ``health_check`` hook are reported healthy.

        Raises:
            SaverNotFoundError: If the saver does not exist
        """
        saver = self.get(name)
        return await self._probe_saver(name if name is not None else self.get_default_saver_name(), saver)

    async def health_check_all(self) -> Dict[str, bool]:
        with self._lock:
            registrations = list(self._savers.values())
        return {r.name: await self._probe_saver(r.name, r.saver) for r in registrations}

    async def _cleanup_loop(self, max_age: float, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            removed = sum((await self.cleanup_all(max_age)).values())
            if removed:
                logger.info(f'Scheduled checkpoint cleanup removed {removed} checkpoints')

    def start_cleanup_scheduler(self, max_age: Optional[float] = None,
                                interval: Optional[float] = None) -> Optional[asyncio.Task]:
        """
        Start periodic cleanup of every saver on the running event loop.

        Args:
            max_age: Age threshold in seconds, ``config.max_age`` if None
            interval: Seconds between runs, ``config.cleanup_interval`` if None

        Returns:
            The scheduler task, or None when no age threshold is configured or the
            interval is not positive
        """
        max_age = max_age if max_age is not None else self.config.max_age
        interval = interval if interval is not None else self.config.cleanup_interval
        if max_age is None or interval <= 0:
            logger.info('Scheduled checkpoint cleanup disabled')
            return None
        _require_max_age(max_age)
        if self._cleanup_task is None or self._cleanup_task.done():
            self._cleanup_task = asyncio.create_task(self._cleanup_loop(max_age, interval))
            logger.info(f'Started checkpoint cleanup every {interval}s for checkpoints older than {max_age}s')
        return self._cleanup_task

    async def stop_cleanup_scheduler(self) -> None:
        if self._cleanup_task is None:
            return
        self._cleanup_task.cancel()
        try:
            await self._cleanup_task
        except asyncio.CancelledError:
            pass
        self._cleanup_task = None
        logger.info('Stopped checkpoint cleanup')

    async def close_all(self) -> None:
        """Stop scheduled cleanup, close every saver and empty the registry."""
        await self.stop_cleanup_scheduler()
        with self._lock:
            registrations = list(self._savers.values())
            self._savers.clear()
            self._default = None
        for registration in registrations:
            await self._close_saver(registration)
        logger.info(f'Closed {len(registrations)} checkpoint savers')

    def clear(self) -> None:
        """Forget every saver without closing it."""
        with self._lock:
            self._savers.clear()
            self._default = None


def build_registry(config: CheckpointConfig) -> CheckpointRegistry:
    """
    Create a registry with one saver per configured type.

    Args:
        config: CheckpointConfig listing saver types and the default saver name

    Returns:
        CheckpointRegistry
    """
    registry = CheckpointRegistry(config)
    for saver_type in config.savers:
        registry.register(saver_type, create_saver(config, saver_type), is_default=saver_type == config.default_saver)
    if config.default_saver and not registry.has(config.default_saver):
        logger.warning(f"Configured default checkpoint saver '{config.default_saver}' is not among {config.savers}")
    return registry
