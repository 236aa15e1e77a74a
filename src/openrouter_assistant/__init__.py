from .assistant import AssistantCore, AssistantReply, build_assistant
from .completion_client import CompletionClient, classify_failure
from .config import AssistantConfig, ModelSpec
from .contracts import ChatMessage, CompletionRequest, CompletionResult
from .errors import (
    AssistantError,
    CompletionError,
    CompletionFailedError,
    ConfigurationError,
    FailureKind,
    InvalidRequestError,
    ModelsExhaustedError,
    NoModelsAvailableError,
    RequestTimeoutError,
)
from .fallback_log import FallbackLog, FallbackReason
from .models import ModelDescriptor, ModelRegistry, ModelRole
from .orchestrator import CompletionOrchestrator, GenerationDefaults, RetryPolicy
from .quota_guard import QuotaGuard

__all__ = [
    "AssistantConfig",
    "AssistantCore",
    "AssistantError",
    "AssistantReply",
    "ChatMessage",
    "CompletionClient",
    "CompletionError",
    "CompletionFailedError",
    "CompletionOrchestrator",
    "CompletionRequest",
    "CompletionResult",
    "ConfigurationError",
    "FailureKind",
    "FallbackLog",
    "FallbackReason",
    "GenerationDefaults",
    "InvalidRequestError",
    "ModelDescriptor",
    "ModelRegistry",
    "ModelRole",
    "ModelSpec",
    "ModelsExhaustedError",
    "NoModelsAvailableError",
    "QuotaGuard",
    "RequestTimeoutError",
    "RetryPolicy",
    "build_assistant",
    "classify_failure",
]
