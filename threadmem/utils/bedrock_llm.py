"""
Amazon Bedrock LLM client used to condense memory entries into summaries.
"""

import random
import time
from typing import Any, Dict, List, Optional, Tuple

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError

from ..exceptions import ThreadMemError
from .config import BedrockLLMConfig
from .logging_config import get_logger

logger = get_logger(__name__)


class BedrockLLMError(ThreadMemError):
    """Custom exception for Bedrock LLM errors."""
    pass


class BedrockLLM:
    """Amazon Bedrock LLM client with retry logic and error handling."""

    def __init__(self, config: BedrockLLMConfig, bedrock_runtime=None):
        """
        Initialize Bedrock LLM client.

        Args:
            config: BedrockLLMConfig instance with connection parameters
            bedrock_runtime: Pre-built bedrock-runtime client
        """
        self.config = config
        self.model_id = config.model_id

        self.bedrock_runtime = bedrock_runtime or boto3.client(
            'bedrock-runtime',
            region_name=config.region,
            config=BotoConfig(
                connect_timeout=60,
                read_timeout=300,
                retries={'max_attempts': 0}  # We handle retries manually
            ))

        logger.info(f'Initialized Bedrock LLM client with model: {self.model_id}')

    def generate_response(self,
                          messages: List[Dict[str, Any]],
                          system_prompt: str,
                          max_tokens: Optional[int] = None,
                          temperature: Optional[float] = None) -> Tuple[str, Optional[Dict[str, Any]]]:
        """
        Generate a response with the Converse API, retrying throttling and transport errors.

        Args:
            messages: List of message dictionaries in Bedrock format
            system_prompt: System prompt for the conversation
            max_tokens: Maximum tokens to generate (uses config default if None)
            temperature: Temperature for generation (uses config default if None)

        Returns:
            Tuple of (response_text, usage)

        Raises:
            BedrockLLMError: If all retry attempts fail
        """
        inf_params = {
            'maxTokens': max_tokens or self.config.max_tokens,
            'temperature': self.config.temperature if temperature is None else temperature,
        }

        for attempt in range(self.config.retry_attempts):
            try:
                response = self.bedrock_runtime.converse(modelId=self.model_id,
                                                         messages=messages,
                                                         system=[{
                                                             'text': system_prompt
                                                         }],
                                                         inferenceConfig=inf_params)

                blocks = response.get('output', {}).get('message', {}).get('content', [])
                text = ''.join(block.get('text', '') for block in blocks)
                logger.debug(f'Bedrock LLM response generated successfully (length: {len(text)})')
                return text, response.get('usage')

            except (ClientError, BotoCoreError) as e:
                logger.warning(f'Bedrock LLM attempt {attempt + 1}/{self.config.retry_attempts} failed: {e}')

                if attempt < self.config.retry_attempts - 1:
                    # Exponential backoff with jitter
                    delay = self.config.retry_delay * (2**attempt) + random.uniform(0, 1)
                    time.sleep(delay)
                else:
                    raise BedrockLLMError(f'Bedrock LLM failed after {self.config.retry_attempts} attempts: {e}',
                                          operation='generate_response',
                                          cause=e) from e

            except Exception as e:
                logger.error(f'Unexpected error in Bedrock LLM: {e}')
                raise BedrockLLMError(f'Unexpected Bedrock LLM error: {e}', operation='generate_response', cause=e) from e

        raise BedrockLLMError(f'Bedrock LLM failed after {self.config.retry_attempts} attempts', operation='generate_response')

    def health_check(self) -> bool:
        """
        Perform a health check on the Bedrock LLM service.

        Returns:
            True if service is healthy, False otherwise
        """
        try:
            test_messages = [{'role': 'user', 'content': [{'text': 'Hi'}]}]
            response, _ = self.generate_response(messages=test_messages,
                                                 system_prompt="You are a helpful assistant. Respond with just 'OK'.",
                                                 max_tokens=10,
                                                 temperature=0.0)
            return len(response.strip()) > 0

        except Exception as e:
            logger.error(f'Bedrock LLM health check failed: {e}')
            return False
