"""
Amazon Bedrock embedding client, used as the memory store's embedding function.
"""

import json
import random
import time
from typing import List

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from ..exceptions import ThreadMemError
from .config import BedrockEmbedConfig
from .logging_config import get_logger

logger = get_logger(__name__)


class BedrockEmbedError(ThreadMemError):
    """Custom exception for Bedrock embedding errors."""
    pass


class BedrockEmbed:
    """Amazon Bedrock embedding client with retry logic and error handling.

    Instances are callable, so one can be passed directly as ``embedding_function``.
    """

    def __init__(self, config: BedrockEmbedConfig, bedrock=None):
        """
        Initialize Bedrock embedding client.

        Args:
            config: BedrockEmbedConfig instance with connection parameters
            bedrock: Pre-built bedrock-runtime client
        """
        self.config = config
        self.model_id = config.model_id
        self.dimension = config.dimension

        self.bedrock = bedrock or boto3.client(service_name='bedrock-runtime', region_name=config.region)

        logger.info(f'Initialized Bedrock Embed client with model: {self.model_id}')

    def _call_with_retry(self, data: dict) -> dict:
        """
        Make a Bedrock API call with retry logic.

        Args:
            data: Request data dictionary

        Returns:
            Response dictionary from Bedrock API

        Raises:
            BedrockEmbedError: If all retry attempts fail
        """
        body = json.dumps(data)

        for attempt in range(self.config.retry_attempts):
            try:
                response = self.bedrock.invoke_model(body=body,
                                                     modelId=self.model_id,
                                                     accept='application/json',
                                                     contentType='application/json')
                return json.loads(response.get('body').read())

            except (ClientError, BotoCoreError) as e:
                logger.warning(f'Bedrock Embed attempt {attempt + 1}/{self.config.retry_attempts} failed: {e}')

                if attempt < self.config.retry_attempts - 1:
                    # Exponential backoff with jitter
                    delay = self.config.retry_delay * (2**attempt) + random.uniform(0, 1)
                    time.sleep(delay)
                else:
                    raise BedrockEmbedError(f'Bedrock Embed failed after {self.config.retry_attempts} attempts: {e}',
                                            operation='embed',
                                            cause=e) from e

        raise BedrockEmbedError(f'Bedrock Embed failed after {self.config.retry_attempts} attempts', operation='embed')

    def _embed(self, text: str, input_type: str) -> List[float]:
        if not text or not text.strip():
            raise BedrockEmbedError('Cannot embed empty text', operation='embed')

        model = self.model_id.lower()
        try:
            if 'titan' in model:
                response = self._call_with_retry({'inputText': text, 'dimensions': self.dimension})
                embedding = response.get('embedding')
            elif 'cohere' in model:
                if self.dimension != 1024:
                    raise BedrockEmbedError(f'Cohere models only support 1024 dimensions, got {self.dimension}',
                                            operation='embed')
                response = self._call_with_retry({'input_type': input_type, 'texts': [text]})
                embeddings = response.get('embeddings') or []
                embedding = embeddings[0] if embeddings else None
            else:
                raise BedrockEmbedError(f'Unsupported embedding model: {self.model_id}', operation='embed')

        except BedrockEmbedError:
            raise
        except Exception as e:
            logger.error(f'Error generating {input_type} embedding: {e}')
            raise BedrockEmbedError(f'Embedding failed: {e}', operation='embed', cause=e) from e

        if not embedding:
            raise BedrockEmbedError('Bedrock returned no embedding', operation='embed', context={'model': self.model_id})
        return embedding

    def embed_document(self, text: str) -> List[float]:
        """
        Generate embeddings for text being stored.

        Args:
            text: Text to embed

        Returns:
            List of embedding values

        Raises:
            BedrockEmbedError: If embedding generation fails
        """
        return self._embed(text, 'search_document')

    def embed_query(self, text: str) -> List[float]:
        """Generate embeddings for search query text."""
        return self._embed(text, 'search_query')

    def __call__(self, text: str) -> List[float]:
        return self.embed_document(text)

    def health_check(self) -> bool:
        """
        Perform a health check on the Bedrock embedding service.

        Returns:
            True if service is healthy, False otherwise
        """
        try:
            return len(self.embed_document('test')) == self.dimension

        except Exception as e:
            logger.error(f'Bedrock Embed health check failed: {e}')
            return False
