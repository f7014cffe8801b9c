"""Image generation with bounded retry."""

from lumina_ai.images.retry import RetryPolicy, diagnostic_hint, is_retryable
from lumina_ai.images.service import (
    check_api_connectivity,
    extract_image_prompt,
    generate_image,
    generate_image_with_retry,
    is_image_generation_request,
)

__all__ = [
    "RetryPolicy",
    "check_api_connectivity",
    "diagnostic_hint",
    "extract_image_prompt",
    "generate_image",
    "generate_image_with_retry",
    "is_image_generation_request",
    "is_retryable",
]
