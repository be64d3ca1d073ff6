"""
secure_client - guarded outbound API request pipeline.

Every API call of an application goes through ``RequestPipeline``: rate
limiting, CSRF tokens, payload sanitization, token refresh and retries.
"""

from secure_client.core.exceptions import (
    AuthExpired,
    ClientError,
    ConfigurationError,
    PipelineError,
    RateLimitExceeded,
    ServiceError,
    TransientNetworkError,
)
from secure_client.services.request_pipeline import RequestPipeline, RetryPolicy

__version__ = "1.0.0"

__all__ = [
    'RequestPipeline',
    'RetryPolicy',
    'PipelineError',
    'RateLimitExceeded',
    'AuthExpired',
    'TransientNetworkError',
    'ClientError',
    'ConfigurationError',
    'ServiceError',
]
