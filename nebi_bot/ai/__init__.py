from .conversation import ConversationMemory
from .directives import DirectiveExtraction, extract_learn_directives
from .health import HealthCounters, HealthStats
from .knowledge import KnowledgeMerger, MergeOutcome
from .orchestrator import ReplyOrchestrator
from .rate_limiter import RateLimiter
from .verifier import FactCheckParser, FactCheckResult, FactVerifier, TolerantFactCheckParser
from .workers import PoolSaturatedError, WorkerPool, WorkerPoolStats

__all__ = [
    "ConversationMemory",
    "DirectiveExtraction",
    "FactCheckParser",
    "FactCheckResult",
    "FactVerifier",
    "HealthCounters",
    "HealthStats",
    "KnowledgeMerger",
    "MergeOutcome",
    "PoolSaturatedError",
    "RateLimiter",
    "ReplyOrchestrator",
    "TolerantFactCheckParser",
    "WorkerPool",
    "WorkerPoolStats",
    "extract_learn_directives",
]
