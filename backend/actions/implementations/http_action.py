"""HTTP actions: call_api and send_webhook.

Requests go through httpx. Targets are checked against private, loopback
and link-local addresses unless the deployment explicitly allows them.
"""

import ipaddress
from datetime import datetime, timezone
from typing import Any, Dict, Optional
from urllib.parse import urlparse

import httpx
import structlog

from actions.base_action import ActionContext, BaseAction, require
from core.constants import ActionKind
from core.exceptions import StepExecutionError

logger = structlog.get_logger(__name__)

ALLOWED_METHODS = ("GET", "POST", "PUT", "PATCH", "DELETE", "HEAD")
BODY_METHODS = ("POST", "PUT", "PATCH", "DELETE")


def validate_url_safety(url: str) -> None:
    """Reject URLs that would reach internal infrastructure.

    Raises:
        ValueError: If URL is unsafe
    """
    parsed = urlparse(url)
    if parsed.scheme.lower() not in ("http", "https"):
        raise ValueError(f"Unsupported scheme: {parsed.scheme or '(none)'}. Only HTTP and HTTPS allowed.")

    hostname = parsed.hostname
    if not hostname:
        raise ValueError("URL must have a valid hostname")
    if hostname.lower() in ("localhost", "localhost.localdomain"):
        raise ValueError("Connections to localhost are not allowed")

    try:
        ip = ipaddress.ip_address(hostname)
    except ValueError:
        # Domain name; not resolved here
        return
    if ip.is_private or ip.is_loopback or ip.is_reserved or ip.is_link_local:
        raise ValueError(f"Connections to private IP {hostname} are not allowed")


def _parse_response(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return response.text


async def _request(
    context: ActionContext,
    method: str,
    url: str,
    *,
    headers: Optional[dict] = None,
    params: Optional[dict] = None,
    body: Any = None,
    timeout: Optional[float] = None,
) -> httpx.Response:
    if not context.services.allow_private_urls:
        try:
            validate_url_safety(url)
        except ValueError as e:
            raise StepExecutionError(str(e), step_id=context.step_id) from e

    kwargs: Dict[str, Any] = {"headers": headers or {}, "params": params or {}}
    if body is not None and method in BODY_METHODS:
        if isinstance(body, (dict, list)):
            kwargs["json"] = body
        else:
            kwargs["content"] = str(body)

    logger.debug("HTTP action request", method=method, url=url, step_id=context.step_id)
    async with httpx.AsyncClient(
        timeout=timeout or context.services.http_timeout,
        transport=context.services.http_transport,
        follow_redirects=True,
    ) as client:
        try:
            return await client.request(method, url, **kwargs)
        except httpx.TimeoutException as e:
            raise StepExecutionError(f"Request to {url} timed out", step_id=context.step_id) from e
        except httpx.HTTPError as e:
            raise StepExecutionError(f"Request to {url} failed: {e}", step_id=context.step_id) from e


class CallApiAction(BaseAction):
    """Make an HTTP request and return the response.

    Config:
        url: Target URL
        method: GET | POST | PUT | PATCH | DELETE | HEAD (default GET)
        headers, params: Optional mappings
        body: JSON-serializable payload for methods that carry one
        timeout: Seconds, overrides the deployment default
        expectedStatus: Optional list of acceptable status codes

    A response outside 2xx/3xx (or outside expectedStatus) fails the step.
    """

    action_kind = ActionKind.CALL_API.value
    display_name = "Call API"
    description = "Make an HTTP request to an external API"

    async def execute(self, config: Dict[str, Any], context: ActionContext) -> Any:
        url = str(require(config, "url", self.action_kind))
        method = str(config.get("method") or "GET").upper()
        if method not in ALLOWED_METHODS:
            raise StepExecutionError(f"call_api: unsupported method {method}", step_id=context.step_id)

        response = await _request(
            context,
            method,
            url,
            headers=config.get("headers"),
            params=config.get("params"),
            body=config.get("body"),
            timeout=config.get("timeout"),
        )

        expected = config.get("expectedStatus")
        ok = response.status_code in expected if expected else response.status_code < 400
        if not ok:
            raise StepExecutionError(
                f"call_api: {method} {url} returned HTTP {response.status_code}",
                step_id=context.step_id,
            )

        return {
            "status": response.status_code,
            "headers": dict(response.headers),
            "data": _parse_response(response),
            "url": url,
            "method": method,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    @classmethod
    def get_config_schema(cls) -> Dict[str, Any]:
        return {
            "type": "object",
            "required": ["url"],
            "properties": {
                "url": {"type": "string"},
                "method": {"type": "string", "enum": list(ALLOWED_METHODS)},
                "headers": {"type": "object"},
                "params": {"type": "object"},
                "body": {},
                "timeout": {"type": "number"},
                "expectedStatus": {"type": "array", "items": {"type": "integer"}},
            },
        }


class SendWebhookAction(BaseAction):
    """POST ``payload`` as JSON to ``url``."""

    action_kind = ActionKind.SEND_WEBHOOK.value
    display_name = "Send Webhook"
    description = "POST a JSON payload to a webhook URL"

    async def execute(self, config: Dict[str, Any], context: ActionContext) -> Any:
        url = str(require(config, "url", self.action_kind))
        payload = config.get("payload")
        if payload is None:
            payload = {}
        headers = {"X-Workflow-Id": context.workflow_id, "X-Execution-Id": context.execution_id}
        headers.update(config.get("headers") or {})

        response = await _request(context, "POST", url, headers=headers, body=payload)
        if response.status_code >= 400:
            raise StepExecutionError(
                f"send_webhook: {url} returned HTTP {response.status_code}", step_id=context.step_id
            )
        return {"delivered": True, "status": response.status_code, "url": url}


HTTP_ACTIONS = {
    ActionKind.CALL_API.value: CallApiAction,
    ActionKind.SEND_WEBHOOK.value: SendWebhookAction,
}
