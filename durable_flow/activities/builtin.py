"""Built-in activities available to every workflow."""

import asyncio
from typing import Any, Dict

import requests

from ..core.activity_registry import ActivityRegistry
from ..core.exceptions import TerminalNodeError
from ..core.logging import get_logger
from .conditions import evaluate_conditions, get_field

logger = get_logger(__name__)


def transform_set(input_data: Any, context) -> Dict[str, Any]:
    """
    Set a single key to a configured value.

    Config:
        key: Output key
        value: Value stored under the key
    """
    key = context.config.get("key")
    if not key:
        raise TerminalNodeError("transform-set requires a 'key'", node_id=context.node_id)
    return {key: context.config.get("value")}


def transform_pick(input_data: Any, context) -> Dict[str, Any]:
    """Keep only the configured fields of a mapping input."""
    fields = context.config.get("fields") or []
    if not isinstance(input_data, dict):
        raise TerminalNodeError(
            f"transform-pick expects an object input, got {type(input_data).__name__}",
            node_id=context.node_id
        )
    return {field: input_data[field] for field in fields if field in input_data}


def logic_merge(input_data: Any, context) -> Any:
    """Join branches; the input already maps each upstream node to its output."""
    return input_data


def logic_if(input_data: Any, context) -> Dict[str, Any]:
    """
    Evaluate conditions against the input and pick the true or false branch.

    Config:
        conditions: List of ``{field, operator, value}``
        combinator: ``and`` (default) or ``or``

    Edges on handle ``output-0`` follow the true branch, ``output-1`` the false one.
    """
    config = context.config
    branch = evaluate_conditions(config.get("conditions") or [], input_data, config.get("combinator", "and"))
    context.logger.info(f"Condition evaluated to {branch}")
    return {"branch": branch, "data": input_data}


def logic_switch(input_data: Any, context) -> Dict[str, Any]:
    """
    Route the input to the edge whose source handle matches a value.

    Config:
        field: Dotted path whose value names the route (value mode)
        rules: List of ``{conditions, combinator, output}``; the first match names the route
        fallback: Route used when no rule matches

    Edges on the ``default`` handle always fire.
    """
    config = context.config
    rules = config.get("rules")
    if rules:
        branch = config.get("fallback")
        for rule in rules:
            if evaluate_conditions(rule.get("conditions") or [], input_data, rule.get("combinator", "and")):
                branch = rule.get("output")
                break
    elif config.get("field"):
        branch = get_field(input_data, config["field"])
    else:
        raise TerminalNodeError("logic-switch requires 'rules' or a 'field'", node_id=context.node_id)
    return {"branch": branch, "data": input_data}


def pass_through(input_data: Any, context) -> Any:
    """Return the input unchanged."""
    return input_data


async def wait_delay(input_data: Any, context) -> Any:
    """Sleep for ``duration`` milliseconds, then pass the input on."""
    duration_ms = context.config.get("duration", 1000)
    context.logger.info(f"Waiting {duration_ms} ms")
    await asyncio.sleep(float(duration_ms) / 1000.0)
    return input_data


def action_http(input_data: Any, context) -> Dict[str, Any]:
    """
    Perform an HTTP request with the shared client.

    Config:
        url: Target URL
        method: HTTP method (default GET)
        headers: Optional request headers
        body: Optional JSON body; defaults to the node input for POST/PUT/PATCH
        timeout: Request timeout in seconds (default 30)

    Server errors (5xx) and 429 are retried by the default classifier;
    other 4xx statuses fail the node.
    """
    config = context.config
    url = config.get("url")
    if not url:
        raise TerminalNodeError("action-http requires a 'url'", node_id=context.node_id)

    method = str(config.get("method", "GET")).upper()
    body = config.get("body")
    if body is None and method in ("POST", "PUT", "PATCH"):
        body = input_data

    context.logger.info(f"{method} {url}")
    response = context.http_client.request(
        method,
        url,
        headers=config.get("headers") or {},
        json=body,
        timeout=config.get("timeout", 30),
    )
    response.raise_for_status()

    try:
        payload = response.json()
    except ValueError:
        payload = response.text

    return {
        "status_code": response.status_code,
        "headers": dict(response.headers),
        "body": payload,
    }


def _http_retryable(error: BaseException):
    """Defer to the default classifier except for malformed requests."""
    if isinstance(error, (requests.exceptions.InvalidURL, requests.exceptions.MissingSchema)):
        return False
    return None


BUILTIN_ACTIVITIES = {
    "transform-set": dict(handler=transform_set),
    "transform-pick": dict(handler=transform_pick),
    "logic-if": dict(handler=logic_if),
    "logic-switch": dict(handler=logic_switch),
    "logic-merge": dict(handler=logic_merge),
    "logic-pass-through": dict(handler=pass_through),
    "wait-delay": dict(handler=wait_delay),
    "action-http": dict(handler=action_http, classify_error=_http_retryable),
}


def register_builtin_activities(registry: ActivityRegistry, replace: bool = False) -> ActivityRegistry:
    """Register every built-in activity that is not registered yet."""
    for name, options in BUILTIN_ACTIVITIES.items():
        if registry.has(name) and not replace:
            continue
        registry.register(name, replace=replace, **options)
    logger.debug(f"Registered {len(BUILTIN_ACTIVITIES)} built-in activities")
    return registry
