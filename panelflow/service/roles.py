from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Mapping, Optional, Protocol, Union

import httpx

from panelflow.logging import get_logger
from panelflow.service.errors import RoleInvocationError

logger = get_logger(__name__)


def _clamp_confidence(value: Any) -> float:
    try:
        confidence = float(value)
    except (TypeError, ValueError) as exc:
        raise RoleInvocationError(f"confidence must be numeric, got {value!r}") from exc
    if confidence != confidence:  # NaN
        raise RoleInvocationError("confidence must be numeric, got NaN")
    return min(1.0, max(0.0, confidence))


@dataclass
class RoleAssessment:
    """One role's structured opinion on a subject."""

    role: str
    recommendation: str
    confidence: float
    rationale: str = ""
    data: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_payload(cls, role: str, payload: Any) -> "RoleAssessment":
        if isinstance(payload, RoleAssessment):
            return payload
        if not isinstance(payload, Mapping):
            raise RoleInvocationError(
                f"role {role} returned {type(payload).__name__}, expected a mapping"
            )
        if "confidence" not in payload:
            raise RoleInvocationError(f"role {role} returned no confidence")
        known = {"role", "recommendation", "confidence", "rationale"}
        return cls(
            role=str(payload.get("role") or role),
            recommendation=str(payload.get("recommendation") or ""),
            confidence=_clamp_confidence(payload["confidence"]),
            rationale=str(payload.get("rationale") or ""),
            data={k: v for k, v in payload.items() if k not in known},
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "role": self.role,
            "recommendation": self.recommendation,
            "confidence": self.confidence,
            "rationale": self.rationale,
            **self.data,
        }


class RoleInvoker(Protocol):
    """Blocking call into an external specialist role."""

    def invoke(self, role_id: str, prompt: str, context: Dict[str, Any]) -> RoleAssessment:
        ...


RoleHandler = Callable[[str, Dict[str, Any]], Union[RoleAssessment, Mapping[str, Any]]]


class CallableRoleInvoker:
    """Role invoker backed by in-process callables, one per role id."""

    def __init__(self, handlers: Optional[Dict[str, RoleHandler]] = None) -> None:
        self.handlers: Dict[str, RoleHandler] = dict(handlers or {})

    def register(self, role_id: str, handler: RoleHandler) -> None:
        self.handlers[role_id] = handler

    def has_role(self, role_id: str) -> bool:
        return role_id in self.handlers

    def invoke(self, role_id: str, prompt: str, context: Dict[str, Any]) -> RoleAssessment:
        handler = self.handlers.get(role_id)
        if handler is None:
            raise RoleInvocationError(f"unknown role {role_id}")
        try:
            payload = handler(prompt, context)
        except RoleInvocationError:
            raise
        except Exception as exc:
            logger.warning(
                "role_handler_failed",
                role=role_id,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise RoleInvocationError(f"role {role_id} failed: {exc}") from exc
        return RoleAssessment.from_payload(role_id, payload)


class HttpRoleInvoker:
    """Role invoker posting prompts to a role service.

    Expects ``POST {base_url}/roles/{role_id}/invoke`` with
    ``{"prompt": ..., "context": ...}`` and a JSON body holding at least
    ``recommendation`` and ``confidence``.
    """

    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = 30.0,
        api_key: Optional[str] = None,
        client: Optional[httpx.Client] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        headers = {"Authorization": f"Bearer {api_key}"} if api_key else {}
        self._client = client or httpx.Client(
            base_url=self.base_url,
            timeout=httpx.Timeout(timeout, connect=min(10.0, timeout)),
            headers=headers,
        )

    def invoke(self, role_id: str, prompt: str, context: Dict[str, Any]) -> RoleAssessment:
        try:
            response = self._client.post(
                f"/roles/{role_id}/invoke",
                json={"prompt": prompt, "context": context},
            )
            response.raise_for_status()
            payload = response.json()
        except httpx.HTTPStatusError as e:
            logger.error(
                "role_invoke_api_error",
                role=role_id,
                status_code=e.response.status_code,
                error=str(e),
            )
            raise RoleInvocationError(
                f"role {role_id} returned HTTP {e.response.status_code}"
            ) from e
        except httpx.TimeoutException as e:
            logger.error("role_invoke_timeout", role=role_id, error=str(e))
            raise RoleInvocationError(f"role {role_id} timed out") from e
        except httpx.HTTPError as e:
            logger.error("role_invoke_connect_error", role=role_id, base_url=self.base_url, error=str(e))
            raise RoleInvocationError(f"role {role_id} unreachable") from e
        except ValueError as e:
            raise RoleInvocationError(f"role {role_id} returned invalid JSON") from e
        assessment = RoleAssessment.from_payload(role_id, payload)
        logger.info(
            "role_invoke_success",
            role=role_id,
            recommendation=assessment.recommendation,
            confidence=assessment.confidence,
        )
        return assessment

    def close(self) -> None:
        self._client.close()
