import asyncio
import inspect
import json
import logging
import math
import re
import time
from typing import Any, Callable, Dict

from ..errors import (
    MerchantOpsError,
    ToolExecutionError,
    UnknownToolError,
    ValidationError,
)
from ..models import ResourceQuery, ToolDescriptor, ToolInvocationRequest, ToolInvocationResult, ToolParameter
from .registry import ToolRegistry

logger = logging.getLogger(__name__)

_TRUE_STRINGS = {"true", "1", "yes"}
_FALSE_STRINGS = {"false", "0", "no"}


def _coerce(param: ToolParameter, value: Any) -> Any:
    """Convert ``value`` to the parameter's declared type or raise ValidationError."""
    expected = param.type

    if expected == "string":
        if isinstance(value, str):
            return value
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return str(value)

    elif expected == "integer":
        if isinstance(value, bool):
            pass
        elif isinstance(value, int):
            return value
        elif isinstance(value, float) and value.is_integer():
            return int(value)
        elif isinstance(value, str):
            try:
                return int(value.strip())
            except ValueError:
                pass

    elif expected == "number":
        if isinstance(value, bool):
            pass
        elif isinstance(value, (int, float)):
            number = float(value)
            if math.isfinite(number):
                return number
        elif isinstance(value, str):
            try:
                number = float(value.strip())
            except ValueError:
                number = math.nan
            if math.isfinite(number):
                return number

    elif expected == "boolean":
        if isinstance(value, bool):
            return value
        if isinstance(value, int) and value in (0, 1):
            return bool(value)
        if isinstance(value, str):
            lowered = value.strip().lower()
            if lowered in _TRUE_STRINGS:
                return True
            if lowered in _FALSE_STRINGS:
                return False

    elif expected == "object":
        if isinstance(value, dict):
            return value
        if isinstance(value, str):
            try:
                decoded = json.loads(value)
            except json.JSONDecodeError:
                decoded = None
            if isinstance(decoded, dict):
                return decoded

    elif expected == "array":
        if isinstance(value, (list, tuple)):
            return list(value)

    raise ValidationError(param.name, f"expected {expected}, got {type(value).__name__}")


class ToolDispatcher:
    """Validates arguments and runs tool handlers in isolation.

    Every per-call failure surfaces as one of ``UnknownToolError``,
    ``ValidationError`` or ``ToolExecutionError``; nothing a handler raises
    escapes in any other form.
    """

    def __init__(self, registry: ToolRegistry) -> None:
        self._registry = registry

    @property
    def registry(self) -> ToolRegistry:
        return self._registry

    def validate(self, descriptor: ToolDescriptor, args: Dict[str, Any]) -> Dict[str, Any]:
        """Return the coerced argument map with defaults applied.

        Args:
            descriptor: Descriptor of the target tool.
            args: Raw arguments as received.

        Returns:
            Dict[str, Any]: Arguments ready to pass to the handler.

        Raises:
            ValidationError: Naming the first offending field.
        """
        validated: Dict[str, Any] = {}
        for param in descriptor.parameters:
            value = args.get(param.name)
            if value is None:
                if param.required:
                    raise ValidationError(param.name, "is required")
                if param.default is not None:
                    validated[param.name] = param.default
                continue
            value = _coerce(param, value)
            if param.pattern and isinstance(value, str) and not re.fullmatch(param.pattern, value):
                raise ValidationError(param.name, "does not match the required format")
            validated[param.name] = value

        unknown = sorted(set(args) - {p.name for p in descriptor.parameters})
        if unknown:
            logger.warning("Dropping unknown arguments for %s: %s", descriptor.name, ", ".join(unknown))
        return validated

    async def _invoke(self, handler: Callable[..., Any], arguments: Dict[str, Any]) -> Any:
        # A class handler gets a fresh instance for every call.
        target = handler().call if inspect.isclass(handler) else handler
        if inspect.iscoroutinefunction(target):
            return await target(**arguments)
        return await asyncio.to_thread(target, **arguments)

    async def execute(self, name: str, args: Dict[str, Any] | None = None) -> Any:
        """Run tool ``name`` with ``args`` and return its payload.

        Raises:
            UnknownToolError: If no tool of that name is registered.
            ValidationError: If the arguments do not satisfy the schema.
            ToolExecutionError: If the handler raised.
        """
        descriptor = self._registry.lookup(name)
        if descriptor is None or descriptor.handler is None:
            raise UnknownToolError(name)

        arguments = self.validate(descriptor, args or {})
        try:
            return await self._invoke(descriptor.handler, arguments)
        except Exception as e:
            logger.exception("Tool %s raised: %s", name, e)
            raise ToolExecutionError(name, str(e) or type(e).__name__) from e

    async def execute_request(self, request: ToolInvocationRequest) -> ToolInvocationResult:
        """Run one request and fold any per-call failure into the result."""
        started = time.perf_counter()
        try:
            payload = await self.execute(request.tool, request.arguments)
        except (UnknownToolError, ValidationError, ToolExecutionError) as e:
            duration_ms = (time.perf_counter() - started) * 1000
            logger.warning(
                "Tool %s failed [%s] in %.1fms: %s",
                request.tool,
                e.type_name,
                duration_ms,
                e.message,
            )
            return ToolInvocationResult.failure(request.correlation_id, request.tool, e, duration_ms)

        duration_ms = (time.perf_counter() - started) * 1000
        logger.info("Tool %s completed in %.1fms", request.tool, duration_ms)
        return ToolInvocationResult.success(request.correlation_id, request.tool, payload, duration_ms)

    async def query_resource(self, query: ResourceQuery) -> Any:
        """Read a registered resource.

        Raises:
            ValidationError: If the URI is not registered.
            ToolExecutionError: If the reader raised.
        """
        resource = self._registry.lookup_resource(query.uri)
        if resource is None:
            raise ValidationError("uri", f"Unknown resource: {query.uri}")
        try:
            result = resource.reader(query.parameters)
            if inspect.isawaitable(result):
                result = await result
            return result
        except MerchantOpsError:
            raise
        except Exception as e:
            logger.exception("Resource %s raised: %s", query.uri, e)
            raise ToolExecutionError(query.uri, str(e) or type(e).__name__) from e
