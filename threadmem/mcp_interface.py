"""
MCP Interface Layer exposing thread memory operations as fastmcp tools.
"""
from typing import Any, Dict, List, Optional

from fastmcp import FastMCP

from .exceptions import ThreadMemError
from .models.core import MemoryEntry, SearchOptions
from .services.memory_store import MemoryStore, build_memory_store
from .utils.config import config
from .utils.health_check import get_system_info
from .utils.logging_config import get_logger

logger = get_logger(__name__)

mcp = FastMCP('Thread Memory')

_memory_store: Optional[MemoryStore] = None


def get_memory_store() -> MemoryStore:
    """Memory store backing the tools, built from configuration on first use."""
    global _memory_store
    if _memory_store is None:
        _memory_store = build_memory_store(config)
    return _memory_store


def set_memory_store(store: Optional[MemoryStore]) -> None:
    global _memory_store
    _memory_store = store


def _entry_dict(entry: MemoryEntry) -> Dict[str, Any]:
    result = {
        'id': entry.id,
        'thread_id': entry.thread_id,
        'user_id': entry.user_id,
        'content': entry.content,
        'type': entry.type.value,
        'importance': entry.importance,
        'tags': entry.tags,
        'created_at': entry.created_at.isoformat(),
        'access_count': entry.access_count,
    }
    if entry.distance is not None:
        result['distance'] = entry.distance
    return result


def _tool_error(operation: str, e: ThreadMemError) -> Exception:
    logger.error(f'Memory error in MCP {operation}: {e.detailed_message()}')
    return Exception(f'Memory {operation} failed: {e}')


async def store_memory(thread_id: str,
                       content: str,
                       memory_type: str = 'conversation',
                       importance: float = 0.5,
                       tags: Optional[List[str]] = None,
                       user_id: Optional[str] = None) -> Dict[str, Any]:
    """Store a memory entry in a thread.

    Args:
        thread_id: Thread ID
        content: Text to remember
        memory_type: conversation, fact, preference, summary, context or custom
        importance: Importance between 0 and 1
        tags: Optional tags
        user_id: Optional user ID

    Returns:
        The stored entry
    """
    try:
        entry = await get_memory_store().store(thread_id,
                                               content, {
                                                   'type': memory_type,
                                                   'importance': importance,
                                                   'tags': tags or []
                                               },
                                               user_id=user_id)
        return _entry_dict(entry)
    except ThreadMemError as e:
        raise _tool_error('store', e)


async def retrieve_memories(thread_id: str, limit: int = 20) -> List[Dict[str, Any]]:
    """Get the most recent memories of a thread.

    Args:
        thread_id: Thread ID
        limit: Maximum number of entries (default: 20)

    Returns:
        Entries, most recent first
    """
    try:
        return [_entry_dict(e) for e in await get_memory_store().retrieve(thread_id, limit)]
    except ThreadMemError as e:
        raise _tool_error('retrieve', e)


async def search_memories(query: str,
                          thread_id: Optional[str] = None,
                          user_id: Optional[str] = None,
                          memory_type: Optional[str] = None,
                          tags: Optional[List[str]] = None,
                          top_k: int = 10,
                          min_importance: Optional[float] = None) -> List[Dict[str, Any]]:
    """Search memories by semantic similarity.

    Args:
        query: Natural language query
        thread_id: Restrict to a thread
        user_id: Restrict to a user
        memory_type: Restrict to a memory type
        tags: Keep entries with any of these tags
        top_k: Maximum number of results to return (default: 10)
        min_importance: Minimum importance

    Returns:
        Entries, closest first
    """
    if not query or not query.strip():
        return []
    try:
        options = SearchOptions(query=query,
                                thread_id=thread_id,
                                user_id=user_id,
                                type=memory_type or None,
                                tags=tags or [],
                                limit=top_k,
                                min_importance=min_importance)
        memories = await get_memory_store().search(options)
        logger.debug(f'MCP search returned {len(memories)} memories')
        return [_entry_dict(m) for m in memories]
    except ThreadMemError as e:
        raise _tool_error('search', e)


async def search_context(query: str, thread_id: str, user_id: Optional[str] = None) -> Dict[str, Any]:
    """Find context for a query in a thread along with a confidence score in [0, 1]."""
    try:
        result = await get_memory_store().search_for_context(query, thread_id, user_id)
        return {'confidence': result.confidence, 'memories': [_entry_dict(m) for m in result.relevant_memories]}
    except ThreadMemError as e:
        raise _tool_error('context search', e)


async def delete_memories(thread_id: str, memory_ids: Optional[List[str]] = None) -> Dict[str, Any]:
    """Delete memories of a thread, or the whole thread when no ids are given."""
    try:
        result = await get_memory_store().delete(thread_id, memory_ids)
        return {
            'deleted_ids': result.deleted_ids,
            'partial': result.partial,
            'graph_error': result.graph_error,
        }
    except ThreadMemError as e:
        raise _tool_error('delete', e)


async def memory_stats() -> Dict[str, Any]:
    """Entry counts per thread and type."""
    try:
        stats = await get_memory_store().get_stats()
        return {
            'total_entries': stats.total_entries,
            'per_thread': stats.per_thread,
            'per_type': stats.per_type,
            'storage_bytes_estimate': stats.storage_bytes_estimate,
        }
    except ThreadMemError as e:
        raise _tool_error('stats', e)


async def system_info() -> Dict[str, Any]:
    """Configuration summary and backend health."""
    return await get_system_info(get_memory_store())


for _tool in (store_memory, retrieve_memories, search_memories, search_context, delete_memories, memory_stats,
              system_info):
    mcp.tool(name=_tool.__name__)(_tool)

if __name__ == '__main__':
    mcp.run(transport=config.mcp.transport, host=config.mcp.host, port=config.mcp.port)
