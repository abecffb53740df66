"""
Invest Gateway - Handler Group Contract
=======================================

What:  The inbound and outbound contract between the gateway and the domain
       handler groups (auth, user, transactions, investments, webhook).
How:   The dispatcher builds a `RequestContext` for each namespaced request
       and awaits the group. The group answers with an outcome:

           Success(body, status_code, headers)   → JSON response
           Failure(kind, message, ...)           → error normalizer
           starlette Response                    → passed through
           any other JSON-serialisable value     → 200 JSON

       Groups may also raise; raised exceptions reach the error normalizer.

Business rules live in the collaborators, not here.
"""

import dataclasses
import inspect
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional, Tuple, Union

from starlette.responses import Response

from invest_gateway.exceptions import Failure, FailureKind

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RequestContext:
    """
    Everything a handler group may rely on for one request.

    Immutable once parsed. A collaborator that authenticates the caller
    attaches the resolved identity with `with_identity()`, which returns a
    new context.
    """

    method: str
    path: str
    subpath: str
    headers: Mapping[str, str]
    query: Mapping[str, str]
    body: Any
    client_id: str
    token: Optional[str] = None
    request_id: str = ""
    identity: Optional[Any] = None

    def with_identity(self, identity: Any) -> "RequestContext":
        return dataclasses.replace(self, identity=identity)


@dataclass(frozen=True)
class Success:
    """A successful outcome rendered as JSON."""

    body: Any = None
    status_code: int = 200
    headers: Dict[str, str] = field(default_factory=dict)


Outcome = Union[Success, Failure, Response, Any]
Endpoint = Callable[[RequestContext], Awaitable[Outcome]]


class HandlerGroup:
    """
    A domain handler group mounted under one namespace.

    Collaborators either subclass and override `handle()`, or register
    endpoints on an instance:

        auth = HandlerGroup("auth")

        @auth.route("POST", "/login")
        async def login(ctx: RequestContext) -> Outcome:
            ...

    Sub-paths are matched exactly, after trailing-slash normalisation.
    Unmatched sub-paths produce a NotFound failure.
    """

    def __init__(self, name: str):
        self.name = name
        self._endpoints: Dict[Tuple[str, str], Endpoint] = {}

    @staticmethod
    def _normalize(subpath: str) -> str:
        return "/" + subpath.strip("/")

    def route(self, method: str, subpath: str) -> Callable[[Endpoint], Endpoint]:
        key = (method.upper(), self._normalize(subpath))

        def decorator(fn: Endpoint) -> Endpoint:
            if not inspect.iscoroutinefunction(fn):
                raise TypeError(f"Endpoint {fn.__name__} for {key} must be async")
            self._endpoints[key] = fn
            return fn

        return decorator

    @property
    def endpoints(self) -> Tuple[Tuple[str, str], ...]:
        return tuple(sorted(self._endpoints))

    async def handle(self, ctx: RequestContext) -> Outcome:
        endpoint = self._endpoints.get((ctx.method, self._normalize(ctx.subpath)))
        if endpoint is None:
            return Failure(
                FailureKind.NOT_FOUND,
                message=f"No {self.name} endpoint for {ctx.method} {ctx.subpath or '/'}",
                extra={"path": ctx.path, "method": ctx.method},
            )
        return await endpoint(ctx)

    def __repr__(self) -> str:
        return f"<HandlerGroup {self.name} endpoints={len(self._endpoints)}>"
