from .errors import (
    ChatError,
    EngineError,
    EngineUnavailable,
    Forbidden,
    GenerationCancelled,
    NotFound,
    RateLimited,
    Unauthorized,
    ValidationError,
)
from .generation_registry import GenerationHandle, GenerationRegistry
from .inference import Completion, GenerationParams, InferenceClient
from .input_guard import InputGuard
from .lifecycle import ConversationLifecycle, LifecycleError, TurnLifecycle
from .models import Conversation, HandoffRequest, Message, StreamEvent, TurnResult
from .rate_limit import TurnRateLimiter
from .safety import SafetyFilter
from .safety_rules import DEFAULT_RULES, SafetyRules

__all__ = [
    "ChatError",
    "Completion",
    "Conversation",
    "ConversationLifecycle",
    "DEFAULT_RULES",
    "EngineError",
    "EngineUnavailable",
    "Forbidden",
    "GenerationCancelled",
    "GenerationHandle",
    "GenerationParams",
    "GenerationRegistry",
    "HandoffRequest",
    "InferenceClient",
    "InputGuard",
    "LifecycleError",
    "Message",
    "NotFound",
    "RateLimited",
    "SafetyFilter",
    "SafetyRules",
    "StreamEvent",
    "TurnLifecycle",
    "TurnRateLimiter",
    "TurnResult",
    "Unauthorized",
    "ValidationError",
]
