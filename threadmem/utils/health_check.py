"""
Health check utilities for the memory and checkpoint components.
"""

import asyncio
from typing import Any, Dict, Optional

from .config import config
from .logging_config import get_logger

logger = get_logger(__name__)


async def _probe(check) -> bool:
    result = await asyncio.to_thread(check) if not asyncio.iscoroutinefunction(check) else await check()
    return bool(result)


async def get_health_status(memory_store=None, registry=None) -> Dict[str, Any]:
    """Get detailed health status of the wired components.

    Args:
        memory_store: MemoryStore whose backends are probed
        registry: CheckpointRegistry to validate, probing each saver

    Returns:
        Dictionary with health status of each component
    """
    health_status: Dict[str, Any] = {}

    if memory_store is not None:
        components = {
            'vector_store': memory_store.vector_store,
            'graph_store': memory_store.graph_store,
            'embedding': memory_store.embedding_function,
        }
        summarizer = memory_store.summarization.summarizer
        if summarizer is not None and hasattr(summarizer, 'llm'):
            components['llm'] = summarizer.llm

        for name, component in components.items():
            check = getattr(component, 'health_check', None)
            if component is None or check is None:
                continue
            try:
                health_status[name] = {'healthy': await _probe(check), 'service': type(component).__name__}
            except Exception as e:
                health_status[name] = {'healthy': False, 'service': type(component).__name__, 'error': str(e)}

    if registry is not None:
        report = registry.validate()
        savers = await registry.health_check_all()
        health_status['checkpoint_registry'] = {
            'healthy': report['valid'] and all(savers.values()),
            'service': 'CheckpointRegistry',
            'default_saver': registry.get_default_saver_name(),
            'issues': report['issues'],
            'warnings': report['warnings'],
            'savers': savers,
        }

    return health_status


async def check_health(memory_store=None, registry=None) -> bool:
    """Check the health of all wired components.

    Returns:
        True if all components are healthy, False otherwise
    """
    try:
        health_status = await get_health_status(memory_store, registry)
        all_healthy = all(status.get('healthy', False) for status in health_status.values())

        if all_healthy:
            logger.info('All system components are healthy')
        else:
            unhealthy = [name for name, status in health_status.items() if not status.get('healthy', False)]
            logger.warning(f'Unhealthy components: {unhealthy}')

        return all_healthy

    except Exception as e:
        logger.error(f'Health check failed: {e}')
        return False


async def get_system_info(memory_store=None, registry=None, app_config: Optional[Any] = None) -> Dict[str, Any]:
    """Get system information and configuration.

    Returns:
        Dictionary with system information
    """
    app_config = app_config or config
    retention = app_config.memory.retention
    return {
        'service_name': 'ThreadMem',
        'version': '0.1.0',
        'configuration': {
            'collection': app_config.memory.collection,
            'eviction_strategy': retention.eviction_strategy,
            'max_per_thread': retention.max_per_thread,
            'global_cap': retention.global_cap,
            'max_age_seconds': retention.max_age,
            'summarization_strategy': app_config.memory.summarization.strategy,
            'default_checkpoint_saver': app_config.checkpoint.default_saver,
            'embedding_model': app_config.bedrock_embed.model_id,
        },
        'health_status': await get_health_status(memory_store, registry)
    }
