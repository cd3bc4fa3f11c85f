"""relay: provider-agnostic LLM gateway adapter layer."""

from relay.compaction import Compactor, TokenEstimator
from relay.config import Settings
from relay.credentials import CredentialResolver, SettingsCredentialResolver
from relay.errors import (
    ConfigurationError,
    ProviderWireError,
    RelayError,
    RunAborted,
    RunTimedOut,
    SchemaTranslationFallback,
    ToolExecutionError,
    TranscriptInvariantViolation,
)
from relay.events import AbortSignal, RunCallbacks, RunEvent
from relay.messages import extract_instructions, from_engine_message, to_engine_messages
from relay.models import (
    CompactionResult,
    ImagePart,
    Message,
    RunPhase,
    RunResult,
    TextPart,
    ThinkingPart,
    ToolCallPart,
    ToolDefinition,
    ToolResultPart,
    TranscriptPolicy,
)
from relay.providers import resolve
from relay.runner import GatewayRunner, HookOverride, RunController, RunParams
from relay.sanitizer import resolve_transcript_policy, sanitize
from relay.schema import translate
from relay.session import JsonlSessionStore, SessionStore
from relay.tools import adapt_tools

__all__ = [
    "AbortSignal",
    "CompactionResult",
    "Compactor",
    "ConfigurationError",
    "CredentialResolver",
    "GatewayRunner",
    "HookOverride",
    "ImagePart",
    "JsonlSessionStore",
    "Message",
    "ProviderWireError",
    "RelayError",
    "RunAborted",
    "RunCallbacks",
    "RunController",
    "RunEvent",
    "RunParams",
    "RunPhase",
    "RunResult",
    "RunTimedOut",
    "SchemaTranslationFallback",
    "SessionStore",
    "Settings",
    "SettingsCredentialResolver",
    "TextPart",
    "ThinkingPart",
    "TokenEstimator",
    "ToolCallPart",
    "ToolDefinition",
    "ToolExecutionError",
    "ToolResultPart",
    "TranscriptInvariantViolation",
    "TranscriptPolicy",
    "adapt_tools",
    "extract_instructions",
    "from_engine_message",
    "resolve",
    "resolve_transcript_policy",
    "sanitize",
    "to_engine_messages",
    "translate",
]
