"""
Base interface for workflow step actions.

Every action kind (send_email, call_api, transform_data, ...) is a BaseAction
subclass implementing execute(). Handlers return their output, which the
engine stores verbatim as the step result, or raise to enter the retry path.
Actions are the only place the engine touches external collaborators.
"""

import asyncio
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Optional

import httpx
import structlog

from core.exceptions import StepExecutionError
from workflow.resolver import TemplateResolver

logger = structlog.get_logger(__name__)


@dataclass
class ActionServices:
    """External collaborators available to action handlers.

    Everything is replaceable so tests and alternative deployments can plug
    in their own senders and stores.
    """

    email_sender: Any = None
    notifier: Any = None
    record_store: Any = None
    http_transport: Optional[httpx.AsyncBaseTransport] = None
    http_timeout: float = 30.0
    allow_private_urls: bool = False
    max_delay_ms: int = 300_000
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep


@dataclass
class ActionContext:
    """Per-invocation context handed to a handler alongside its config."""

    tenant_id: str
    workflow_id: str
    execution_id: str
    step_id: str
    resolver: TemplateResolver
    services: ActionServices = field(default_factory=ActionServices)

    @property
    def scope(self):
        """Read-only merged view of variables, trigger data and step results."""
        return self.resolver.scope


class BaseAction(ABC):
    """
    Abstract base class for all action handlers.

    Subclasses must implement:
    - execute(config, context) -> output
    - action_kind / display_name (class attributes)
    """

    action_kind: str = "base"
    display_name: str = "Base Action"
    description: str = "Abstract base action"
    # Config keys handed to the handler unresolved; it resolves them itself.
    raw_config_keys: tuple = ()

    @abstractmethod
    async def execute(self, config: Dict[str, Any], context: ActionContext) -> Any:
        """
        Perform the action.

        Args:
            config: Step config with templates already resolved
            context: Execution identifiers, resolver and collaborators

        Returns:
            The step output

        Raises:
            StepExecutionError: On failure (the engine may retry)
        """

    async def run(self, config: Dict[str, Any], context: ActionContext) -> Any:
        """
        Run the action with timing and structured logging.

        This is the entry point called by the workflow engine. Errors are
        logged and re-raised so the retry controller sees them.
        """
        start = time.monotonic()
        logger.debug("Action starting", action=self.action_kind, step_id=context.step_id)
        try:
            output = await self.execute(config, context)
        except StepExecutionError:
            self._log_failure(start, context)
            raise
        except Exception as e:
            self._log_failure(start, context, e)
            raise StepExecutionError(f"{self.action_kind} failed: {e}", step_id=context.step_id) from e

        logger.info(
            "Action completed",
            action=self.action_kind,
            step_id=context.step_id,
            duration_ms=round((time.monotonic() - start) * 1000, 2),
        )
        return output

    def _log_failure(self, start: float, context: ActionContext, error: Exception = None) -> None:
        logger.warning(
            "Action failed",
            action=self.action_kind,
            step_id=context.step_id,
            error=str(error) if error else None,
            duration_ms=round((time.monotonic() - start) * 1000, 2),
        )

    @classmethod
    def get_config_schema(cls) -> Dict[str, Any]:
        """
        Return JSON schema for the action configuration.

        Override in subclasses to define expected config shape.
        """
        return {"type": "object", "properties": {}}


def require(config: Dict[str, Any], key: str, action_kind: str) -> Any:
    """Fetch a required config value or fail the step."""
    value = config.get(key)
    if value is None or value == "":
        raise StepExecutionError(f"{action_kind}: missing required config '{key}'")
    return value
