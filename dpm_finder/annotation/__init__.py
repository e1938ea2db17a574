"""
Annotation module for DPM Finder.

Provides:
- Streaming completion clients (OpenAI, Anthropic)
- Prompt construction for metric explanations
- Cancellable annotation streams with forward-only state
- Pipeline coordinator sequencing ranking, config resolution and annotation
"""

from dpm_finder.annotation.completion_client import (
    CompletionClient,
    OpenAIClient,
    AnthropicClient,
    create_completion_client,
    create_completion_client_from_config,
    detect_provider,
)

from dpm_finder.annotation.prompts import (
    PROMPT_TEMPLATE,
    AnnotationRequest,
    accumulate,
    build_prompt,
)

from dpm_finder.annotation.pipeline import (
    AnnotationStatus,
    AnnotationState,
    AnnotationStream,
    AnnotationPipeline,
)

from dpm_finder.annotation.coordinator import (
    CoordinatorPhase,
    CoordinatorSnapshot,
    PipelineCoordinator,
)

__all__ = [
    # Clients
    "CompletionClient",
    "OpenAIClient",
    "AnthropicClient",
    "create_completion_client",
    "create_completion_client_from_config",
    "detect_provider",
    # Prompts
    "PROMPT_TEMPLATE",
    "AnnotationRequest",
    "accumulate",
    "build_prompt",
    # Pipeline
    "AnnotationStatus",
    "AnnotationState",
    "AnnotationStream",
    "AnnotationPipeline",
    # Coordinator
    "CoordinatorPhase",
    "CoordinatorSnapshot",
    "PipelineCoordinator",
]
