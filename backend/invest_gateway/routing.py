"""
Invest Gateway - Router / Dispatcher
====================================

What:  Maps (method, path) to a domain handler group, a system responder, a
       named static view, a public file, or the terminal not-found responder.
How:   `build_route_table()` produces an immutable, validated `RouteTable`
       once at startup. `mount_routes()` turns it into Starlette routes in
       dispatch order:

           1. /api/health, /api/info            (system responders)
           2. /api/<namespace>[/...]            (handler groups)
           3. /, /login, /dashboard, ...        (named views)
           4. /{anything}                       (public file, else not-found)

       The catch-all is registered last and accepts every method, so nothing
       falls through to Starlette's own 404/405 handling.

Namespaces:
    auth, user, transactions, investments, webhook, each under /api.
    Prefixes must be disjoint on path-segment boundaries: /api/user and
    /api/users may coexist, /api/user and /api/user/admin may not.
"""

import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, Iterable, Mapping, Optional, Tuple

from fastapi import APIRouter, FastAPI
from fastapi.encoders import jsonable_encoder
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from invest_gateway.config import TEN_MEGABYTES
from invest_gateway.exceptions import Failure, FailureKind, RouteTableError, ValidationError
from invest_gateway.handlers import HandlerGroup, Outcome, RequestContext, Success
from invest_gateway.middleware.rate_limit import client_identity
from invest_gateway.middleware.request_id import request_id_var
from invest_gateway.routes import system, views

logger = logging.getLogger(__name__)

API_PREFIX = "/api"
NAMESPACES: Tuple[str, ...] = ("auth", "user", "transactions", "investments", "webhook")

DISPATCH_METHODS = ["GET", "POST", "PUT", "PATCH", "DELETE"]
ALL_METHODS = DISPATCH_METHODS + ["HEAD", "OPTIONS"]

JSON_CONTENT_TYPES = ("application/json",)
FORM_CONTENT_TYPES = ("application/x-www-form-urlencoded", "multipart/form-data")
DEFAULT_MAX_PART_SIZE = TEN_MEGABYTES


# ══════════════════════════════════════════════════════════════════════════
# Route Table
# ══════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class RouteEntry:
    """
    One row of the route table.

    Dynamic entries own a path prefix and a handler group. Static entries
    own one exact path and the name of the document served there.
    """

    prefix: str
    group: Optional[HandlerGroup] = None
    dynamic: bool = True
    document: Optional[str] = None

    @property
    def name(self) -> str:
        if self.group is not None:
            return self.group.name
        return self.prefix.strip("/") or "index"

    def matches(self, path: str) -> bool:
        if not self.dynamic:
            return path == self.prefix
        return path == self.prefix or path.startswith(self.prefix + "/")


def _segments(path: str) -> Tuple[str, ...]:
    return tuple(part for part in path.split("/") if part)


def _overlaps(a: str, b: str) -> bool:
    sa, sb = _segments(a), _segments(b)
    shorter = min(len(sa), len(sb))
    return sa[:shorter] == sb[:shorter]


class RouteTable:
    """Immutable, validated set of route entries. Built once per process."""

    def __init__(self, entries: Iterable[RouteEntry]):
        self._entries: Tuple[RouteEntry, ...] = tuple(entries)
        self._validate()

    def _validate(self) -> None:
        dynamic = [e for e in self._entries if e.dynamic]
        static = [e for e in self._entries if not e.dynamic]

        for entry in self._entries:
            if not entry.prefix.startswith("/"):
                raise RouteTableError(f"Route prefix must start with '/': {entry.prefix!r}")
            if entry.dynamic and entry.group is None:
                raise RouteTableError(f"Dynamic route {entry.prefix} has no handler group")
            if not entry.dynamic and not entry.document:
                raise RouteTableError(f"Static route {entry.prefix} has no document")

        for i, first in enumerate(dynamic):
            for second in dynamic[i + 1:]:
                if _overlaps(first.prefix, second.prefix):
                    raise RouteTableError(
                        f"Namespaces overlap: {first.prefix} and {second.prefix}"
                    )

        seen = set()
        for entry in static:
            if entry.prefix in seen:
                raise RouteTableError(f"Duplicate static route: {entry.prefix}")
            seen.add(entry.prefix)
            shadowing = next((d for d in dynamic if d.matches(entry.prefix)), None)
            if shadowing is not None:
                raise RouteTableError(
                    f"Static route {entry.prefix} falls inside namespace {shadowing.prefix}"
                )

    @property
    def entries(self) -> Tuple[RouteEntry, ...]:
        return self._entries

    @property
    def dynamic(self) -> Tuple[RouteEntry, ...]:
        return tuple(e for e in self._entries if e.dynamic)

    @property
    def static(self) -> Tuple[RouteEntry, ...]:
        return tuple(e for e in self._entries if not e.dynamic)

    def namespaces(self) -> Dict[str, str]:
        return {entry.name: entry.prefix for entry in self.dynamic}

    def __len__(self) -> int:
        return len(self._entries)


def build_route_table(
    handler_groups: Optional[Mapping[str, HandlerGroup]] = None,
) -> RouteTable:
    """
    Build the gateway's route table.

    Args:
        handler_groups: Collaborators keyed by namespace name. Namespaces
                        without a collaborator are mounted with an empty
                        group that answers NotFound.

    Raises:
        RouteTableError: unknown namespace names or overlapping prefixes.
    """
    handler_groups = dict(handler_groups or {})
    unknown = set(handler_groups) - set(NAMESPACES)
    if unknown:
        raise RouteTableError(f"Unknown namespaces: {sorted(unknown)}")

    entries = [
        RouteEntry(
            prefix=f"{API_PREFIX}/{name}",
            group=handler_groups.get(name) or HandlerGroup(name),
        )
        for name in NAMESPACES
    ]
    entries.extend(
        RouteEntry(prefix=path, dynamic=False, document=document)
        for path, document in views.VIEW_DOCUMENTS.items()
    )
    return RouteTable(entries)


# ══════════════════════════════════════════════════════════════════════════
# Request Context
# ══════════════════════════════════════════════════════════════════════════

def bearer_token(request: Request) -> Optional[str]:
    scheme, _, credentials = request.headers.get("authorization", "").partition(" ")
    if scheme.lower() == "bearer" and credentials.strip():
        return credentials.strip()
    return None


async def parse_body(request: Request, max_part_size: int = DEFAULT_MAX_PART_SIZE) -> Any:
    """
    Parse the request body by content type.

    JSON → decoded value, form → dict (repeated keys become lists),
    anything else → raw bytes, empty body → None. The body limit
    middleware has already capped how many bytes can arrive here;
    `max_part_size` lifts Starlette's 1 MB per-part multipart cap to the
    same ceiling.
    """
    content_type = request.headers.get("content-type", "").split(";")[0].strip().lower()

    if content_type in JSON_CONTENT_TYPES or content_type.endswith("+json"):
        raw = await request.body()
        if not raw.strip():
            return None
        try:
            return json.loads(raw)
        except ValueError as e:
            raise ValidationError(message=f"Malformed JSON body: {e}") from e

    if content_type in FORM_CONTENT_TYPES:
        form = await request.form(max_part_size=max_part_size)
        parsed: Dict[str, Any] = {}
        for key in form.keys():
            values = form.getlist(key)
            parsed[key] = values[0] if len(values) == 1 else values
        return parsed

    raw = await request.body()
    return raw or None


async def build_request_context(
    request: Request,
    entry: RouteEntry,
    trust_proxy: bool = False,
    max_part_size: int = DEFAULT_MAX_PART_SIZE,
) -> RequestContext:
    path = request.url.path
    return RequestContext(
        method=request.method,
        path=path,
        subpath=path[len(entry.prefix):] or "/",
        headers=dict(request.headers),
        query=dict(request.query_params),
        body=await parse_body(request, max_part_size),
        client_id=client_identity(request, trust_proxy),
        token=bearer_token(request),
        request_id=request_id_var.get(""),
    )


# ══════════════════════════════════════════════════════════════════════════
# Dispatch
# ══════════════════════════════════════════════════════════════════════════

def render_outcome(outcome: Outcome, request: Request) -> Response:
    """Turn whatever a handler group returned into exactly one response."""
    if isinstance(outcome, Response):
        return outcome
    if isinstance(outcome, Failure):
        return request.app.state.gateway.normalizer.render(
            outcome, request_id=request_id_var.get("")
        )
    if isinstance(outcome, Success):
        if outcome.status_code == 204:
            return Response(status_code=204, headers=outcome.headers)
        return JSONResponse(
            content=jsonable_encoder(outcome.body),
            status_code=outcome.status_code,
            headers=outcome.headers,
        )
    return JSONResponse(content=jsonable_encoder(outcome))


async def dispatch_namespace(request: Request, entry: RouteEntry) -> Response:
    """
    Hand one request to its handler group.

    Exceptions raised by the group are not caught here; they travel to the
    registered exception handlers or the error boundary.
    """
    gateway = request.app.state.gateway
    settings = gateway.settings
    ctx = await build_request_context(
        request, entry, settings.trust_proxy, max_part_size=settings.max_body_bytes
    )
    outcome = await entry.group.handle(ctx)
    return render_outcome(outcome, request)


def _namespace_endpoint(entry: RouteEntry):
    async def endpoint(request: Request) -> Response:
        return await dispatch_namespace(request, entry)

    endpoint.__name__ = f"dispatch_{entry.name}"
    return endpoint


def _view_endpoint(entry: RouteEntry):
    async def endpoint(request: Request) -> Response:
        return views.serve_view(request.app.state.gateway.settings, entry.document)

    endpoint.__name__ = f"view_{entry.name}"
    return endpoint


def is_api_path(path: str) -> bool:
    return path == API_PREFIX or path.startswith(API_PREFIX + "/")


async def not_found(request: Request) -> Response:
    """
    Terminal responder for anything no earlier route claimed.

    /api/... → 404 JSON envelope with the path and method.
    elsewhere → a public static file when one matches, else the 404 page.
    """
    path = request.url.path
    gateway = request.app.state.gateway

    if is_api_path(path):
        return gateway.normalizer.render(
            Failure(
                FailureKind.NOT_FOUND,
                message="API endpoint not found",
                extra={"path": path, "method": request.method},
            ),
            request_id=request_id_var.get(""),
        )

    if request.method in ("GET", "HEAD"):
        public_file = views.find_public_file(gateway.settings.public_dir, path)
        if public_file is not None:
            return views.file_response(public_file)

    return views.serve_not_found_page(gateway.settings)


def mount_routes(app: FastAPI, table: RouteTable) -> None:
    """Register every route on `app` in dispatch order."""
    app.include_router(system.router)

    dispatch = APIRouter(tags=["Dispatch"])
    for entry in table.dynamic:
        endpoint = _namespace_endpoint(entry)
        for path in (entry.prefix, entry.prefix + "/{subpath:path}"):
            dispatch.add_api_route(
                path,
                endpoint,
                methods=DISPATCH_METHODS,
                include_in_schema=False,
            )
    for entry in table.static:
        endpoint = _view_endpoint(entry)
        # /login and /login/ serve the same document
        paths = {entry.prefix, entry.prefix.rstrip("/") + "/"}
        for path in sorted(paths):
            dispatch.add_api_route(
                path,
                endpoint,
                methods=["GET", "HEAD"],
                include_in_schema=False,
            )
    dispatch.add_api_route(
        "/{full_path:path}",
        not_found,
        methods=ALL_METHODS,
        include_in_schema=False,
    )
    app.include_router(dispatch)

    logger.debug(
        "Mounted %d namespaces and %d views", len(table.dynamic), len(table.static)
    )
