"""
Dispatch layer: runs a batch of method calls against one SyncEngine.

A request is ``{"methodCalls": [[name, args, callId], ...], "createdIds"?}``.
The response is the ordered list ``[[name | "error", payload, callId], ...]``.

Method names are ``<Type>/<verb>``. The dispatcher derives the closed set
of MethodIds it must serve from the frozen registry and refuses to start
if any of them lacks a handler, or if a handler is bound to an id the
registry does not declare.

Invariants:
    - A malformed request raises RequestError before any handler runs
    - Invocations run one at a time, in request order
    - One invocation's failure never affects its siblings
    - Responses match invocations 1:1 by position and callId

How to change safely:
    - New verbs need a Verb member, a handler factory, and a rule in
      _declared_method_ids()
    - Never catch RequestError inside process(); it halts the request
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, NamedTuple, Optional, Tuple

from ..engine.engine import SyncEngine
from ..engine.errors import MethodError, UnknownMethodError
from ..schema.registry import TypeRegistry

logger = logging.getLogger(__name__)

ERROR_NOT_JSON = "urn:ietf:params:jmap:error:notJSON"
ERROR_NOT_REQUEST = "urn:ietf:params:jmap:error:notRequest"

# (success, payload)
HandlerResult = Tuple[bool, Dict[str, Any]]
Handler = Callable[[Dict[str, Any]], Awaitable[HandlerResult]]


class Verb(str, Enum):
    """Method verbs the dispatcher knows how to serve."""

    GET = "get"
    CHANGES = "changes"
    SET = "set"


class MethodId(NamedTuple):
    """Typed method identifier: ``type_name`` x ``verb``."""

    type_name: str
    verb: Verb

    @property
    def name(self) -> str:
        return f"{self.type_name}/{self.verb.value}"

    @classmethod
    def parse(cls, name: str) -> Optional[MethodId]:
        """Parse ``"Type/verb"``; returns None for anything else."""
        type_name, sep, verb = name.partition("/")
        if not sep or not type_name:
            return None
        try:
            return cls(type_name, Verb(verb))
        except ValueError:
            return None


class RequestError(Exception):
    """The request as a whole is malformed.

    Attributes:
        type: JMAP request-level error URN
        status: HTTP status to answer with
        detail: Optional human-readable detail
    """

    def __init__(self, type: str, status: int = 400, detail: Optional[str] = None) -> None:
        super().__init__(detail or type)
        self.type = type
        self.status = status
        self.detail = detail

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {"type": self.type, "status": self.status}
        if self.detail:
            result["detail"] = self.detail
        return result


class MethodTableError(Exception):
    """The method table does not match the registry's declared methods."""

    pass


def _declared_method_ids(registry: TypeRegistry) -> set[MethodId]:
    declared = set()
    for record_type in registry.record_types():
        declared.add(MethodId(record_type.name, Verb.GET))
        declared.add(MethodId(record_type.name, Verb.CHANGES))
        declared.add(MethodId(record_type.name, Verb.SET))
    for aggregate in registry.aggregate_types():
        declared.add(MethodId(aggregate.name, Verb.GET))
    return declared


def _validate_request(request: Any) -> List[list]:
    if request is None:
        raise RequestError(ERROR_NOT_JSON, detail="Request body is empty")
    if not isinstance(request, dict):
        raise RequestError(ERROR_NOT_REQUEST, detail="Request must be a JSON object")

    method_calls = request.get("methodCalls")
    if not isinstance(method_calls, list):
        raise RequestError(ERROR_NOT_REQUEST, detail="'methodCalls' must be an array")

    for position, invocation in enumerate(method_calls):
        if (
            not isinstance(invocation, (list, tuple))
            or len(invocation) != 3
            or not isinstance(invocation[0], str)
            or not isinstance(invocation[1], dict)
            or not isinstance(invocation[2], str)
        ):
            raise RequestError(
                ERROR_NOT_REQUEST,
                detail=f"Invocation {position} must be [name, arguments, callId]",
            )
    return method_calls


class Dispatcher:
    """Routes method calls to engine operations.

    Attributes:
        engine: Engine serving the account
        registry: Frozen registry the method table is derived from

    Example:
        >>> dispatcher = Dispatcher(engine, registry)
        >>> await dispatcher.process({
        ...     "methodCalls": [["Email/get", {"ids": ["1"]}, "c1"]],
        ... })
        [['Email/get', {...}, 'c1']]
    """

    def __init__(self, engine: SyncEngine, registry: TypeRegistry) -> None:
        self.engine = engine
        self.registry = registry
        self._declared = _declared_method_ids(registry)
        self._handlers: Dict[MethodId, Handler] = {}

        for method_id in sorted(self._declared):
            if method_id.verb is Verb.GET:
                self._handlers[method_id] = self._get_handler(method_id.type_name)
            elif method_id.verb is Verb.CHANGES:
                self._handlers[method_id] = self._changes_handler(method_id.type_name)
            elif method_id.verb is Verb.SET:
                self._handlers[method_id] = self._set_handler(method_id.type_name)

        self.check_method_table()

    def _get_handler(self, type_name: str) -> Handler:
        async def handle(args: Dict[str, Any]) -> HandlerResult:
            try:
                result = await self.engine.get(type_name, args)
            except MethodError as e:
                return False, e.to_dict()
            return True, result.to_dict()

        return handle

    def _changes_handler(self, type_name: str) -> Handler:
        async def handle(args: Dict[str, Any]) -> HandlerResult:
            try:
                result = await self.engine.changes(type_name, args)
            except MethodError as e:
                return False, e.to_dict()
            return True, result.to_dict()

        return handle

    def _set_handler(self, type_name: str) -> Handler:
        async def handle(args: Dict[str, Any]) -> HandlerResult:
            try:
                result = await self.engine.set(type_name, args)
            except MethodError as e:
                return False, e.to_dict()
            return True, result.to_dict()

        return handle

    def register(self, method_id: MethodId, handler: Handler) -> None:
        """Bind (or rebind) ``handler`` to a declared method id.

        Raises:
            MethodTableError: If the registry does not declare ``method_id``
        """
        if method_id not in self._declared:
            raise MethodTableError(f"Method {method_id.name} is not declared by the registry")
        self._handlers[method_id] = handler

    def check_method_table(self) -> None:
        """Verify the table covers exactly the declared method ids.

        Raises:
            MethodTableError: Listing missing and undeclared methods
        """
        missing = sorted(m.name for m in self._declared - self._handlers.keys())
        extra = sorted(m.name for m in self._handlers.keys() - self._declared)
        errors = []
        if missing:
            errors.append(f"no handler for: {', '.join(missing)}")
        if extra:
            errors.append(f"undeclared handlers: {', '.join(extra)}")
        if errors:
            raise MethodTableError("; ".join(errors))

    @property
    def method_names(self) -> list[str]:
        return sorted(m.name for m in self._handlers)

    async def _invoke(self, name: str, args: Dict[str, Any], call_id: str) -> list:
        method_id = MethodId.parse(name)
        handler = self._handlers.get(method_id) if method_id is not None else None
        if handler is None:
            logger.info("Unknown method", extra={"method": name, "call_id": call_id})
            return ["error", UnknownMethodError().to_dict(), call_id]

        try:
            ok, payload = await handler(args)
        except Exception as e:
            logger.error(
                f"Method {name} failed: {e}",
                extra={"method": name, "call_id": call_id},
                exc_info=True,
            )
            return ["error", {"type": "serverFail", "description": str(e)}, call_id]

        if not ok:
            logger.info(
                "Method error",
                extra={"method": name, "call_id": call_id, "error_type": payload.get("type")},
            )
            return ["error", payload, call_id]
        return [name, payload, call_id]

    async def process(self, request: Any) -> List[list]:
        """Run every invocation of ``request`` in order.

        Args:
            request: Decoded request object

        Returns:
            Ordered ``[name | "error", payload, callId]`` entries

        Raises:
            RequestError: If the request is malformed (nothing is run)
        """
        try:
            method_calls = _validate_request(request)
        except RequestError as e:
            logger.warning(
                "Rejected malformed request",
                extra={"error_type": e.type, "detail": e.detail},
            )
            raise

        responses = []
        for name, args, call_id in method_calls:
            responses.append(await self._invoke(name, args, call_id))
        return responses
