"""Services package for gencache.

This module exports the generation layer's components.
"""

from gencache.services.cache import CachedArtifact, CacheStats, GenerationCache
from gencache.services.extraction import (
    ExtractionResult,
    FallbackTemplate,
    ResponseExtractor,
    ResponseFormat,
)
from gencache.services.fingerprint import canonical_json, fingerprint
from gencache.services.invoker import InvocationResult, RetryingInvoker, RetryPolicy
from gencache.services.orchestrator import (
    CacheFirstOrchestrator,
    ChainStage,
    GenerationRequest,
    Resolution,
)
from gencache.services.quota import (
    Admission,
    AdmissionGate,
    QuotaGate,
    QuotaInfo,
    QuotaState,
    RedisQuotaGate,
)
from gencache.services.upstream import OpenAIGenerator, UpstreamGenerator

__all__ = [
    # Cache
    "CachedArtifact",
    "CacheStats",
    "GenerationCache",
    # Extraction
    "ExtractionResult",
    "FallbackTemplate",
    "ResponseExtractor",
    "ResponseFormat",
    # Fingerprint
    "canonical_json",
    "fingerprint",
    # Invocation
    "InvocationResult",
    "RetryingInvoker",
    "RetryPolicy",
    # Orchestration
    "CacheFirstOrchestrator",
    "ChainStage",
    "GenerationRequest",
    "Resolution",
    # Quota
    "Admission",
    "AdmissionGate",
    "QuotaGate",
    "QuotaInfo",
    "QuotaState",
    "RedisQuotaGate",
    # Upstream
    "OpenAIGenerator",
    "UpstreamGenerator",
]
