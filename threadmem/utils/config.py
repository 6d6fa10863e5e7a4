"""
Configuration management for storage backends, AWS services and memory policies.
"""

import os
from dataclasses import dataclass, field
from typing import List, Optional

from dotenv import load_dotenv

load_dotenv()


def _optional_int(value: Optional[str]) -> Optional[int]:
    """Parse an integer setting where empty or 0 disables the limit."""
    if value is None or value.strip() == '':
        return None
    parsed = int(value)
    return parsed if parsed > 0 else None


def _bool(value: str) -> bool:
    return value.strip().lower() in ('1', 'true', 'yes', 'on')


@dataclass
class BedrockLLMConfig:
    """Configuration for Amazon Bedrock LLM service."""
    region: str
    model_id: str
    max_tokens: int
    temperature: float
    retry_attempts: int
    retry_delay: float


@dataclass
class BedrockEmbedConfig:
    """Configuration for Amazon Bedrock Embed service."""
    region: str
    model_id: str
    dimension: int
    retry_attempts: int
    retry_delay: float


@dataclass
class NeptuneConfig:
    """Configuration for Amazon Neptune graph database."""
    endpoint: str
    port: int
    region: str


@dataclass
class OpenSearchConfig:
    """Configuration for OpenSearch."""
    endpoint: str
    port: int
    region: str
    service: str = 'aoss'
    index_sync_wait: float = 15.0


@dataclass
class RetentionConfig:
    """Retention policy thresholds. None disables a cap."""
    max_entries: Optional[int] = 10000
    max_age: Optional[int] = 24 * 60 * 60
    max_per_thread: Optional[int] = 1000
    max_total: Optional[int] = 50000
    cleanup_interval: int = 60 * 60
    eviction_strategy: str = 'lru'
    importance_threshold: float = 0.5
    importance_strategy: str = 'keep_above'

    @property
    def global_cap(self) -> Optional[int]:
        """Smallest of the collection-wide caps that are set."""
        caps = [cap for cap in (self.max_entries, self.max_total) if cap]
        return min(caps) if caps else None


@dataclass
class SummarizationConfig:
    """Thresholds for condensing old thread entries into a summary entry."""
    max_messages: int = 100
    strategy: str = 'balanced'
    max_input_chars: int = 12000


@dataclass
class MemoryConfig:
    """Configuration for the memory store."""
    collection: str = 'memory-entries'
    graph_mirror: bool = True
    graceful_degradation: bool = True
    operation_timeout: float = 30.0
    retention_mode: str = 'sync'
    auto_summarize: bool = False
    relationship_threshold: float = 0.8
    relationship_neighbors: int = 5
    retention: RetentionConfig = field(default_factory=RetentionConfig)
    summarization: SummarizationConfig = field(default_factory=SummarizationConfig)


@dataclass
class CheckpointConfig:
    """Configuration for checkpoint savers."""
    default_saver: str = 'memory'
    savers: List[str] = field(default_factory=lambda: ['memory'])
    sqlite_path: str = 'checkpoints.db'
    dynamodb_table: str = 'threadmem-checkpoints'
    dynamodb_region: str = 'us-east-1'
    max_checkpoints: Optional[int] = None
    # Age in seconds past which scheduled cleanup deletes checkpoints, None disables it
    max_age: Optional[int] = None
    cleanup_interval: int = 60 * 60


@dataclass
class MCPConfig:
    """Configuration for MCP interface."""
    transport: str
    host: str
    port: int


@dataclass
class AppConfig:
    """Main application configuration."""
    environment: str
    log_level: str
    bedrock_llm: BedrockLLMConfig
    bedrock_embed: BedrockEmbedConfig
    neptune: NeptuneConfig
    opensearch: OpenSearchConfig
    memory: MemoryConfig
    checkpoint: CheckpointConfig
    mcp: MCPConfig


def load_config() -> AppConfig:
    """Load configuration from environment variables with defaults."""
    environment = os.getenv('ENVIRONMENT', 'development')

    # Bedrock configuration
    bedrock_llm_config = BedrockLLMConfig(region=os.getenv('BEDROCK_LLM_AWS_REGION', 'us-east-1'),
                                          model_id=os.getenv('BEDROCK_LLM_MODEL_ID', 'anthropic.claude-3-haiku-20240307-v1:0'),
                                          max_tokens=int(os.getenv('BEDROCK_LLM_MAX_TOKENS', '500')),
                                          temperature=float(os.getenv('BEDROCK_LLM_TEMPERATURE', '0.3')),
                                          retry_attempts=int(os.getenv('BEDROCK_LLM_RETRY_ATTEMPTS', '3')),
                                          retry_delay=float(os.getenv('BEDROCK_LLM_RETRY_DELAY', '1.0')))

    bedrock_embed_config = BedrockEmbedConfig(region=os.getenv('BEDROCK_EMBED_AWS_REGION', 'us-east-1'),
                                              model_id=os.getenv('BEDROCK_EMBED_MODEL_ID', 'amazon.titan-embed-text-v2:0'),
                                              dimension=int(os.getenv('BEDROCK_EMBED_DIMENSION', '1024')),
                                              retry_attempts=int(os.getenv('BEDROCK_EMBED_RETRY_ATTEMPTS', '3')),
                                              retry_delay=float(os.getenv('BEDROCK_EMBED_RETRY_DELAY', '1.0')))

    # Graph backend configuration
    neptune_config = NeptuneConfig(endpoint=os.getenv('NEPTUNE_ENDPOINT', 'localhost'),
                                   port=int(os.getenv('NEPTUNE_PORT', '8182')),
                                   region=os.getenv('NEPTUNE_AWS_REGION', 'us-east-1'))

    # Vector backend configuration
    opensearch_config = OpenSearchConfig(endpoint=os.getenv('OPENSEARCH_ENDPOINT', 'localhost'),
                                         port=int(os.getenv('OPENSEARCH_PORT', '443')),
                                         region=os.getenv('OPENSEARCH_AWS_REGION', 'us-east-1'),
                                         service=os.getenv('OPENSEARCH_SERVICE', 'aoss'),
                                         index_sync_wait=float(os.getenv('OPENSEARCH_INDEX_SYNC_WAIT', '15')))

    # Memory configuration
    retention_config = RetentionConfig(max_entries=_optional_int(os.getenv('MEMORY_RETENTION_MAX_ENTRIES', '10000')),
                                       max_age=_optional_int(os.getenv('MEMORY_RETENTION_MAX_AGE', '86400')),
                                       max_per_thread=_optional_int(os.getenv('MEMORY_RETENTION_MAX_PER_THREAD', '1000')),
                                       max_total=_optional_int(os.getenv('MEMORY_RETENTION_MAX_TOTAL', '50000')),
                                       cleanup_interval=int(os.getenv('MEMORY_RETENTION_CLEANUP_INTERVAL', '3600')),
                                       eviction_strategy=os.getenv('MEMORY_RETENTION_STRATEGY', 'lru').lower(),
                                       importance_threshold=float(os.getenv('MEMORY_RETENTION_IMPORTANCE_THRESHOLD', '0.5')),
                                       importance_strategy=os.getenv('MEMORY_RETENTION_IMPORTANCE_STRATEGY',
                                                                     'keep_above').lower())

    summarization_config = SummarizationConfig(max_messages=int(os.getenv('MEMORY_SUMMARIZATION_MAX_MESSAGES', '100')),
                                               strategy=os.getenv('MEMORY_SUMMARIZATION_STRATEGY', 'balanced').lower(),
                                               max_input_chars=int(os.getenv('MEMORY_SUMMARIZATION_MAX_INPUT_CHARS', '12000')))

    memory_config = MemoryConfig(collection=os.getenv('MEMORY_COLLECTION', 'memory-entries'),
                                 graph_mirror=_bool(os.getenv('MEMORY_GRAPH_MIRROR', 'true')),
                                 graceful_degradation=_bool(os.getenv('MEMORY_GRACEFUL_DEGRADATION', 'true')),
                                 operation_timeout=float(os.getenv('MEMORY_OPERATION_TIMEOUT', '30')),
                                 retention_mode=os.getenv('MEMORY_RETENTION_MODE', 'sync').lower(),
                                 auto_summarize=_bool(os.getenv('MEMORY_AUTO_SUMMARIZE', 'false')),
                                 relationship_threshold=float(os.getenv('MEMORY_RELATIONSHIP_THRESHOLD', '0.8')),
                                 relationship_neighbors=int(os.getenv('MEMORY_RELATIONSHIP_NEIGHBORS', '5')),
                                 retention=retention_config,
                                 summarization=summarization_config)

    # Checkpoint configuration
    savers = [name.strip() for name in os.getenv('CHECKPOINT_SAVERS', 'memory').split(',') if name.strip()]
    checkpoint_config = CheckpointConfig(default_saver=os.getenv('CHECKPOINT_DEFAULT_SAVER', 'memory'),
                                         savers=savers,
                                         sqlite_path=os.getenv('CHECKPOINT_SQLITE_PATH', 'checkpoints.db'),
                                         dynamodb_table=os.getenv('CHECKPOINT_DYNAMODB_TABLE', 'threadmem-checkpoints'),
                                         dynamodb_region=os.getenv('CHECKPOINT_DYNAMODB_AWS_REGION', 'us-east-1'),
                                         max_checkpoints=_optional_int(os.getenv('CHECKPOINT_MAX_PER_THREAD')),
                                         max_age=_optional_int(os.getenv('CHECKPOINT_MAX_AGE')),
                                         cleanup_interval=int(os.getenv('CHECKPOINT_CLEANUP_INTERVAL', '3600')))

    # MCP configuration
    mcp_config = MCPConfig(transport=os.getenv('MCP_TRANSPORT', 'sse'),
                           host=os.getenv('MCP_HOST', '127.0.0.1'),
                           port=int(os.getenv('MCP_PORT', '8000')))

    return AppConfig(environment=environment,
                     log_level=os.getenv('LOG_LEVEL', 'INFO'),
                     bedrock_llm=bedrock_llm_config,
                     bedrock_embed=bedrock_embed_config,
                     neptune=neptune_config,
                     opensearch=opensearch_config,
                     memory=memory_config,
                     checkpoint=checkpoint_config,
                     mcp=mcp_config)


# Global configuration instance
config = load_config()
