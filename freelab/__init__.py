"""
Freelab - free-mode chemistry lab simulation step engine.

Turns (environment snapshot, student action, recent history) into a validated,
minimal diff plus UI hints, using a generative backend under a per-classroom
monthly spend quota.

No HTTP framework, database or global config is required by the core.
All collaborators are injected by the caller.
"""

__version__ = "0.1.0"

# Main entry point
from .orchestrator import StepOrchestrator, StepStage

# Schemas
from .schemas import (
    ValueUnit,
    GasInstant,
    SoundInstant,
    Instants,
    Properties,
    Liquid,
    Solid,
    AqueousSpecies,
    Contents,
    Environment,
    AddAction,
    HeatAction,
    StirAction,
    Action,
    ToolUpdate,
    UIEvent,
    EnvironmentDiff,
    PostAction,
    ActionRecord,
    StepRequest,
    StepResult,
    UsageRow,
    UsageDelta,
)
from .timeline import (
    Setup,
    MaterialSpec,
    ToolSpec,
    EnvironmentSpec,
    TimelineFile,
    apply_post_action,
    load_timeline,
    save_timeline,
)
from .validators import SchemaKind, validate

# Errors
from .errors import (
    FieldIssue,
    StepError,
    AuthError,
    AuthorizationError,
    ValidationError,
    QuotaExceededError,
    BackendError,
    MalformedOutputError,
    SchemaViolationError,
    MeteringError,
)

# Pipeline components
from .prompts import StepPrompt, build_step_prompt
from .llm_calls import (
    Completion,
    GenerativeBackend,
    MirascopeBackend,
    OllamaBackend,
    build_backend,
    invoke_backend,
)
from .normalizer import UnknownIdPolicy, normalize
from .ui_events import derive
from .metering import (
    Admission,
    Pricing,
    QuotaMeter,
    UsageStore,
    InMemoryUsageStore,
    JsonUsageStore,
    PostgresUsageStore,
    QuotaStore,
    StaticQuotaStore,
    month_key,
)
from .access import (
    Claims,
    ClaimsProvider,
    StaticClaimsProvider,
    BearerClaimsProvider,
    MembershipChecker,
    InMemoryMembership,
)

__all__ = [
    # Main class
    "StepOrchestrator",
    "StepStage",
    # Schemas
    "ValueUnit",
    "GasInstant",
    "SoundInstant",
    "Instants",
    "Properties",
    "Liquid",
    "Solid",
    "AqueousSpecies",
    "Contents",
    "Environment",
    "AddAction",
    "HeatAction",
    "StirAction",
    "Action",
    "ToolUpdate",
    "UIEvent",
    "EnvironmentDiff",
    "PostAction",
    "ActionRecord",
    "StepRequest",
    "StepResult",
    "UsageRow",
    "UsageDelta",
    # Timeline
    "Setup",
    "MaterialSpec",
    "ToolSpec",
    "EnvironmentSpec",
    "TimelineFile",
    "apply_post_action",
    "load_timeline",
    "save_timeline",
    # Validation
    "SchemaKind",
    "validate",
    # Errors
    "FieldIssue",
    "StepError",
    "AuthError",
    "AuthorizationError",
    "ValidationError",
    "QuotaExceededError",
    "BackendError",
    "MalformedOutputError",
    "SchemaViolationError",
    "MeteringError",
    # Pipeline
    "StepPrompt",
    "build_step_prompt",
    "Completion",
    "GenerativeBackend",
    "MirascopeBackend",
    "OllamaBackend",
    "build_backend",
    "invoke_backend",
    "UnknownIdPolicy",
    "normalize",
    "derive",
    # Metering
    "Admission",
    "Pricing",
    "QuotaMeter",
    "UsageStore",
    "InMemoryUsageStore",
    "JsonUsageStore",
    "PostgresUsageStore",
    "QuotaStore",
    "StaticQuotaStore",
    "month_key",
    # Collaborators
    "Claims",
    "ClaimsProvider",
    "StaticClaimsProvider",
    "BearerClaimsProvider",
    "MembershipChecker",
    "InMemoryMembership",
]
