"""
Ragebaiter — Political Framing Analysis and Intervention Engine

Analyzes short posts for ideological framing and logical fallacies and
decides whether, and how strongly, to intervene for a given viewer.

Public API:
  - AnalysisCacheService: two-tier, single-flight cache in front of analyzers
  - Phase1Analyzer:       content vector, fallacies and topic (Gemini)
  - Phase2Analyzer:       per-user rebuttal (OpenAI, Anthropic or Gemini; BYOK)
  - DeterministicAnalyzer: offline hash-based stand-in for Phase1Analyzer
  - DecisionEngine:       cooldown-aware intervention level
  - QuotaService:         daily / monthly counters with a short local cache
  - RequestRateLimiter:   per-identity sliding window for inbound requests
  - AnalysisPipeline:     quota → cache → decision request path

Usage:
    from ragebaiter import AnalysisCacheService, Phase1Analyzer, InMemoryRepository
    cache = AnalysisCacheService(InMemoryRepository(), Phase1Analyzer())
    hit = await cache.analyze("tweet-100", "This is a political tweet")
"""

__version__ = "0.1.0"

from ragebaiter.models import (
    ContentVector,
    Phase1Analysis,
    Phase2Analysis,
    Phase2Context,
    AnalyzeResult,
    QuotaStatus,
)
from ragebaiter.errors import Ok, Retry, Fatal, Timeout, Network, HttpFailure, classify, to_outcome
from ragebaiter.rate_limit import SlidingWindowRateLimiter, RequestRateLimiter
from ragebaiter.analyzer import Phase1Analyzer, Phase2Analyzer, DeterministicAnalyzer
from ragebaiter.cache import AnalysisCacheService, LruTtlCache
from ragebaiter.repository import (
    Repository,
    InMemoryRepository,
    NoopRepository,
    SQLiteRepository,
    SupabaseRepository,
)
from ragebaiter.quota import QuotaService, InMemoryQuotaStore, SupabaseQuotaStore
from ragebaiter.decision import DecisionEngine, Decision, DecisionConfig, UserProfile
from ragebaiter.pipeline import AnalysisPipeline
from ragebaiter.llm import LLMProvider
from ragebaiter.llm.factory import get_provider

__all__ = [
    "ContentVector",
    "Phase1Analysis",
    "Phase2Analysis",
    "Phase2Context",
    "AnalyzeResult",
    "QuotaStatus",
    "Ok",
    "Retry",
    "Fatal",
    "Timeout",
    "Network",
    "HttpFailure",
    "classify",
    "to_outcome",
    "SlidingWindowRateLimiter",
    "RequestRateLimiter",
    "Phase1Analyzer",
    "Phase2Analyzer",
    "DeterministicAnalyzer",
    "AnalysisCacheService",
    "LruTtlCache",
    "Repository",
    "InMemoryRepository",
    "NoopRepository",
    "SQLiteRepository",
    "SupabaseRepository",
    "QuotaService",
    "InMemoryQuotaStore",
    "SupabaseQuotaStore",
    "DecisionEngine",
    "Decision",
    "DecisionConfig",
    "UserProfile",
    "AnalysisPipeline",
    "LLMProvider",
    "get_provider",
]
