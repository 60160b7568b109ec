"""
Free-mode step orchestrator.

Fully decoupled from HTTP, storage and providers.
All collaborators are injected by the caller.

One step runs start to finish or fails, with no retries:
1. Extract claims (AuthChecked)
2. Check membership and validate the body (InputValidated)
3. Quota admission (QuotaAdmitted)
4. Build the prompt and call the generative backend (GenerativeCallCompleted)
5. Normalize and clamp the raw output (Normalized)
6. Derive UI events and record usage (EventsDerivedAndMetered)
7. Assemble the response (Responded)

Any failure ends the step in Rejected(reason): a StepError tagged with the
stage that was reached.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from .access import ClaimsProvider, MembershipChecker
from .config import Config
from .errors import (
    AuthError,
    AuthorizationError,
    MalformedOutputError,
    QuotaExceededError,
    StepError,
)
from .llm_calls import GenerativeBackend, build_backend, invoke_backend
from .llm_utils import preview_text
from .logging_utils import (
    log_deterministic,
    log_error,
    log_info,
    log_llm,
    log_success,
)
from .metering import InMemoryUsageStore, QuotaMeter, QuotaStore, StaticQuotaStore, UsageStore
from .normalizer import UnknownIdPolicy, normalize
from .prompts import build_step_prompt
from .schemas import StepRequest, StepResult
from .ui_events import derive
from .validators import SchemaKind, validate


class StepStage(str, Enum):
    """Stages of one step, in order."""

    START = "start"
    AUTH_CHECKED = "AuthChecked"
    INPUT_VALIDATED = "InputValidated"
    QUOTA_ADMITTED = "QuotaAdmitted"
    GENERATIVE_CALL_COMPLETED = "GenerativeCallCompleted"
    NORMALIZED = "Normalized"
    EVENTS_DERIVED_AND_METERED = "EventsDerivedAndMetered"
    RESPONDED = "Responded"


StepListener = Callable[[StepRequest, StepResult], None]


class StepOrchestrator:
    """
    Runs free-mode simulation steps.

    Holds no per-step state: concurrent ``step`` calls share only the injected
    collaborators, so each request can run on its own task.
    """

    def __init__(
        self,
        *,
        backend: GenerativeBackend,
        meter: QuotaMeter,
        claims_provider: ClaimsProvider,
        membership: MembershipChecker,
        history_window: Optional[int] = None,
        unknown_id_policy: Optional[UnknownIdPolicy | str] = None,
        backend_timeout: Optional[float] = None,
        step_listeners: Optional[List[StepListener]] = None,
    ):
        """Initialize orchestrator with all dependencies injected.

        Args:
            backend: Generative backend (one call per step)
            meter: Quota admission and usage recording
            claims_provider: Extracts caller identity from the request
            membership: Classroom membership lookup
            history_window: How many trailing history records reach the prompt
                (defaults to Config.HISTORY_WINDOW)
            unknown_id_policy: accept / strip / reject diffs that reference ids
                the caller did not send (defaults to Config.UNKNOWN_ID_POLICY)
            backend_timeout: Seconds before the backend call fails
                (defaults to Config.LLM_TIMEOUT_SECONDS)
            step_listeners: Optional callables invoked after each successful
                step with (request, result), e.g. to append to a timeline
        """
        self.backend = backend
        self.meter = meter
        self.claims_provider = claims_provider
        self.membership = membership
        self.history_window = Config.HISTORY_WINDOW if history_window is None else history_window
        self.unknown_id_policy = UnknownIdPolicy(unknown_id_policy or Config.UNKNOWN_ID_POLICY)
        self.backend_timeout = backend_timeout
        self.step_listeners = step_listeners or []

    @classmethod
    def from_config(
        cls,
        *,
        claims_provider: ClaimsProvider,
        membership: MembershipChecker,
        usage_store: Optional[UsageStore] = None,
        quota_store: Optional[QuotaStore] = None,
    ) -> "StepOrchestrator":
        """Build an orchestrator from environment configuration."""
        meter = QuotaMeter(
            usage_store or InMemoryUsageStore(),
            quota_store or StaticQuotaStore(default_cents=Config.DEFAULT_QUOTA_CENTS),
            Config.pricing(),
        )
        return cls(
            backend=build_backend(),
            meter=meter,
            claims_provider=claims_provider,
            membership=membership,
        )

    async def _check_membership(self, user_id: str, payload: Any) -> None:
        classroom_id = payload.get("classroomId") if isinstance(payload, Mapping) else None
        # Without a usable classroomId, validation reports the problem instead.
        if not isinstance(classroom_id, str) or not classroom_id:
            return
        if not await self.membership.is_member(user_id, classroom_id):
            raise AuthorizationError(user_id=user_id, classroom_id=classroom_id)

    async def step(self, request: Any, payload: Any) -> StepResult:
        """Run one step.

        Args:
            request: Whatever the claims provider understands (HTTP request, headers)
            payload: Decoded JSON body: {classroomId, env, action, history}

        Returns:
            StepResult with the normalized diff, UI events and token counts

        Raises:
            StepError: Rejected(reason); ``stage`` is the last stage reached
        """
        stage = StepStage.START
        try:
            claims = self.claims_provider.get_claims(request)
            if claims is None:
                raise AuthError()
            stage = StepStage.AUTH_CHECKED

            await self._check_membership(claims.user_id, payload)
            step_request: StepRequest = validate(payload, SchemaKind.STEP_REQUEST)
            classroom_id = step_request.classroom_id
            env = step_request.env
            stage = StepStage.INPUT_VALIDATED
            log_deterministic(
                f"[Step] {classroom_id}: {step_request.action.type} -> {step_request.action.target} "
                f"({len(step_request.history)} history record(s))"
            )

            admission = await self.meter.admit(classroom_id)
            if not admission.allowed:
                raise QuotaExceededError(
                    usage=admission.snapshot(), quota=admission.quota, month=admission.month
                )
            stage = StepStage.QUOTA_ADMITTED

            prompt = build_step_prompt(
                env,
                step_request.action,
                step_request.history,
                history_window=self.history_window,
            )
            if Config.DEBUG_LLM:
                log_info(f"[DEBUG_LLM] System prompt:\n{prompt.instructions}")
                log_info(f"[DEBUG_LLM] User prompt:\n{prompt.context}")

            log_llm(f"[Backend] Calling {self.backend.describe()}...")
            completion = await invoke_backend(self.backend, prompt, timeout=self.backend_timeout)
            stage = StepStage.GENERATIVE_CALL_COMPLETED
            log_llm(
                f"[Backend] Completed ({completion.tokens_in} in / {completion.tokens_out} out tokens)"
            )
            if Config.DEBUG_LLM:
                log_info(f"[DEBUG_LLM] Raw completion:\n{completion.text}")

            try:
                post_action = normalize(
                    completion.text,
                    known_environment_ids=[env.id],
                    known_tool_ids=env.attached_tools,
                    policy=self.unknown_id_policy,
                )
            except MalformedOutputError as exc:
                raw = exc.raw_text if Config.DEBUG_LLM else preview_text(exc.raw_text)
                log_error(f"[Normalizer] Unusable output ({exc.reason}). Raw text: {raw}")
                raise
            stage = StepStage.NORMALIZED

            events = derive(env, post_action)
            post_action = post_action.model_copy(update={"ui_events": events})

            delta = self.meter.delta_for(completion.tokens_in, completion.tokens_out)
            usage = await self.meter.record(classroom_id, delta, month=admission.month)
            stage = StepStage.EVENTS_DERIVED_AND_METERED
            log_deterministic(
                f"[Metering] {classroom_id} {admission.month}: +{delta.cost_micro_usd} micro-USD "
                f"(total {usage.cost_micro_usd} of {admission.quota})"
            )

            result_fields: Dict[str, Any] = {
                "post_action": post_action,
                "ui_events": events,
                "tokens_in": completion.tokens_in,
                "tokens_out": completion.tokens_out,
            }
            # The recorded total also counts steps admitted concurrently with this one.
            if usage.cost_micro_usd > admission.quota:
                result_fields["quota_exceeded"] = True
            result = StepResult(**result_fields)
            stage = StepStage.RESPONDED
            log_success(f"[Step] {classroom_id}: {len(events)} UI event(s)")

        except StepError as exc:
            exc.stage = stage.value
            log_error(f"[Step] Rejected at {stage.value}: {exc.code} ({exc})")
            raise

        # Listener failures are logged but don't fail the step.
        for listener in self.step_listeners:
            try:
                listener(step_request, result)
            except Exception as exc:  # pragma: no cover - diagnostic hook
                log_error(f"[Step] Listener failed: {exc}")

        return result

    async def handle(self, request: Any, payload: Any) -> Tuple[int, Dict[str, Any]]:
        """Run a step and return an HTTP-equivalent (status, JSON body) pair."""
        try:
            result = await self.step(request, payload)
        except StepError as exc:
            return exc.http_status, exc.to_body()
        except Exception as exc:
            log_error(f"[Step] Unexpected error: {exc!r}")
            return 500, {"error": "INTERNAL_ERROR", "message": "Unexpected error"}
        return 200, result.to_wire()


__all__ = ["StepOrchestrator", "StepStage", "StepListener"]
