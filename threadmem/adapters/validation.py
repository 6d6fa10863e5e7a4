"""
Input validation shared by the graph and vector adapters.

All checks run before any backend call so bad input never reaches a database client.
"""

import re
from typing import Any, List, Optional

from ..exceptions import InvalidInputError, InvalidNodeError, InvalidRelationshipError, SecurityError

RELATIONSHIP_TYPE_PATTERN = re.compile(r'^[A-Z_][A-Z0-9_]*$')
MAX_RELATIONSHIP_TYPE_LENGTH = 50

# Substring denylist for raw queries. Not a parser: it blocks obvious destructive
# statements and nothing more.
DESTRUCTIVE_KEYWORDS = ('DROP', 'DELETE ALL', 'REMOVE ALL')


def validate_node_id(node_id: Any, field: str = 'node_id') -> str:
    """Ensure a node id is a non-empty string."""
    if not isinstance(node_id, str) or not node_id.strip():
        raise InvalidNodeError(f'{field} must be a non-empty string', operation='validate_node_id', context={field: node_id})
    return node_id


def validate_node_data(labels: Any, node_id: Optional[str] = None) -> List[str]:
    """Validate node labels (at least one, all non-empty strings) and an optional explicit id.

    Returns:
        The labels as a list
    """
    if isinstance(labels, str):
        labels = [labels]
    if not labels:
        raise InvalidNodeError('Node must have at least one label', operation='create_node', context={'labels': labels})
    for label in labels:
        if not isinstance(label, str) or not label.strip():
            raise InvalidNodeError('Node labels must be non-empty strings',
                                   operation='create_node',
                                   context={'labels': list(labels)})
    if node_id is not None:
        validate_node_id(node_id)
    return list(labels)


def validate_relationship_type(rel_type: Any) -> str:
    """Relationship types are upper snake case, at most 50 characters."""
    if not isinstance(rel_type, str) or not rel_type:
        raise InvalidRelationshipError('Relationship type must be a non-empty string',
                                       operation='create_relationship',
                                       context={'type': rel_type})
    if len(rel_type) > MAX_RELATIONSHIP_TYPE_LENGTH:
        raise InvalidRelationshipError(f'Relationship type exceeds {MAX_RELATIONSHIP_TYPE_LENGTH} characters',
                                       operation='create_relationship',
                                       context={'type': rel_type})
    if not RELATIONSHIP_TYPE_PATTERN.match(rel_type):
        raise InvalidRelationshipError('Relationship type must match ^[A-Z_][A-Z0-9_]*$',
                                       operation='create_relationship',
                                       context={'type': rel_type})
    return rel_type


def validate_relationship_data(from_node_id: Any, to_node_id: Any, rel_type: Any) -> None:
    validate_node_id(from_node_id, 'from_node_id')
    validate_node_id(to_node_id, 'to_node_id')
    validate_relationship_type(rel_type)


def validate_query(query: Any) -> str:
    """Reject empty raw queries and queries containing a destructive keyword.

    Raises:
        InvalidInputError: If the query is empty
        SecurityError: If the query contains a denylisted keyword
    """
    if not isinstance(query, str) or not query.strip():
        raise InvalidInputError('Query must be a non-empty string', operation='execute_query')
    upper = query.upper()
    for keyword in DESTRUCTIVE_KEYWORDS:
        if keyword in upper:
            raise SecurityError(f'Query contains forbidden keyword: {keyword}', keyword=keyword)
    return query


def validate_vector_query(query_embedding: Optional[List[float]], query_text: Optional[str], k: int) -> None:
    """Exactly one of embedding or text, and a positive ``k``."""
    if (query_embedding is None) == (query_text is None):
        raise InvalidInputError('Exactly one of query_embedding or query_text is required', operation='query')
    if query_text is not None and not query_text.strip():
        raise InvalidInputError('query_text must be non-empty', operation='query')
    if query_embedding is not None and len(query_embedding) == 0:
        raise InvalidInputError('query_embedding must be non-empty', operation='query')
    if k <= 0:
        raise InvalidInputError('k must be positive', operation='query', context={'k': k})
