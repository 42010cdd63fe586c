"""FastAPI application exposing schema compilation, validation and the codec.

Schema sets are registered once (from in-memory documents or from files the
server can read), compiled into an immutable model, and addressed by id in
later requests.

Quick start (run the server)::

    uvicorn xsd_engine.app:app --reload

Endpoints:

    GET    /health                      Basic health check
    POST   /schemas                     Register and compile a schema set
    GET    /schemas                     List registered schema ids
    GET    /schemas/{id}                Component overview (``?detail=true`` for all),
                                        source etag and ``stale`` flag
    DELETE /schemas/{id}                Forget a schema set
    POST   /schemas/{id}/validate       Validate an XML document
    POST   /schemas/{id}/decode         Validate, then decode into JSON data
    POST   /schemas/{id}/encode         Encode JSON data as XML
    GET    /metrics/performance         Operation, request and cache counters
    GET    /metrics/cache               Model cache analytics
    POST   /cache/clear                 Drop every cached model
    POST   /metrics/reset               Reset counters

Example: register an in-memory schema and validate against it::

    curl -X POST http://localhost:8000/schemas \\
         -H "Content-Type: application/json" \\
         -d '{"documents": {"main.xsd": "<xs:schema ...>"}, "entry": ["main.xsd"]}'
    curl -X POST http://localhost:8000/schemas/<id>/validate \\
         -H "Content-Type: application/json" \\
         -d '{"document": "<order>...</order>"}'

Configuration:
    * ``XSD_ENGINE_OPTIONS``: default validation options as ``key=value`` pairs,
      e.g. ``fail_fast=true,max_depth=40``.
    * ``XSD_ENGINE_BUILD_CONFIG``: build settings, e.g. ``aggregate_errors=true``.
    * ``XSD_ENGINE_CACHE_TTL``: seconds a compiled model stays cached.

Error handling:
    * Schema, encode and parse errors map to 422 with ``kind`` and ``location``.
    * Unknown schema ids are 404; both are wrapped in JSON payloads.
"""

from __future__ import annotations

import json
import logging
import os
import time
from dataclasses import dataclass, field, replace
from datetime import datetime
from decimal import Decimal
from functools import lru_cache
from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field, ValidationError

from . import __version__
from .cache import CachedSchemaBuilder, SchemaCache, get_cached_builder, parse_config_key
from .codec import decode as decode_outcome
from .codec import encode as encode_data
from .exceptions import XsdEngineError
from .model import SchemaModel
from .monitoring import get_monitor
from .nodetree import serialize
from .validator import ValidationOptions, ValidationOutcome, validate

logger = logging.getLogger(__name__)


def _get_validation_options() -> ValidationOptions:
    """Read default validation options from ``XSD_ENGINE_OPTIONS``."""
    options = ValidationOptions()
    for key, value in parse_config_key(os.getenv("XSD_ENGINE_OPTIONS", "")).items():
        if hasattr(options, key):
            setattr(options, key, value)
        else:
            logger.warning(f"Ignoring unknown validation option '{key}'")
    return options


VALIDATION_OPTIONS = _get_validation_options()

app = FastAPI(
    title="XSD Engine API",
    version=__version__,
    description="Compile XML Schema 1.0 sets, validate instances and map them to JSON",
    docs_url="/docs",
    redoc_url="/redoc",
)


@app.middleware("http")
async def monitor_requests(request: Request, call_next):
    """Record latency and status of every request."""
    start_time = time.time()
    response = await call_next(request)
    response_time = time.time() - start_time

    route = request.scope.get("route")
    path = getattr(route, "path", request.url.path)
    get_monitor().record_endpoint_request(
        f"{request.method} {path}", response_time, response.status_code
    )

    response.headers["X-Response-Time"] = f"{response_time:.3f}s"
    response.headers["X-API-Version"] = __version__
    return response


# ---------------- Request / response models ---------------- #


class SchemaRequest(BaseModel):
    """Register a schema set from inline documents or server-side paths."""

    documents: Optional[Dict[str, str]] = Field(
        None, description="Inline schema documents keyed by location"
    )
    entry: List[str] = Field(..., min_length=1, description="Entry document locations")
    force_refresh: bool = Field(False, description="Rebuild even if cached")


class SchemaResponse(BaseModel):
    id: str
    entry: List[str]
    namespaces: List[Optional[str]]
    unresolved_imports: List[Optional[str]]
    elements: List[str]
    types: int
    created_at: str
    etag: str = ""
    stale: bool = False


class ValidateRequest(BaseModel):
    document: str = Field(..., description="XML document text")
    root_element: Optional[str] = Field(
        None, description="Expected root element in Clark notation ({ns}local)"
    )
    fail_fast: Optional[bool] = Field(None, description="Override the server default")
    max_depth: Optional[int] = Field(None, ge=1, description="Override the server default")


class ViolationModel(BaseModel):
    path: str
    line: Optional[int] = None
    column: Optional[int] = None
    kind: str
    message: str
    expected: Any = None
    actual: Any = None


class ValidateResponse(BaseModel):
    valid: bool
    violations: List[ViolationModel] = Field(default_factory=list)


class DecodeResponse(ValidateResponse):
    data: Any = None


class EncodeRequest(BaseModel):
    element: str = Field(..., description="Global element in Clark notation ({ns}local)")
    data: Any = Field(..., description="Value shaped like the decoder output")


class EncodeResponse(BaseModel):
    document: str


# ---------------- Registry ---------------- #


@dataclass
class RegisteredSchema:
    id: str
    model: SchemaModel
    entry: List[str]
    cache_key: str
    created_at: datetime = field(default_factory=datetime.now)

    def describe(self, cache: Optional[SchemaCache] = None) -> SchemaResponse:
        """Summary; with ``cache``, also the source etag and whether the cached model went stale."""
        etag = cache.etag(self.cache_key) if cache is not None else ""
        stale = cache.check_file_staleness(self.cache_key) if cache is not None else False
        return SchemaResponse(
            id=self.id,
            entry=self.entry,
            namespaces=list(self.model.namespaces),
            unresolved_imports=list(self.model.unresolved_imports),
            elements=[str(name) for name in self.model.elements],
            types=len(self.model.types),
            created_at=self.created_at.isoformat(),
            etag=etag,
            stale=stale,
        )


class SchemaRegistry:
    """Registered schema sets by id; compilation goes through the model cache."""

    def __init__(self, builder: CachedSchemaBuilder) -> None:
        self.builder = builder
        self._schemas: Dict[str, RegisteredSchema] = {}

    def register(self, request: SchemaRequest) -> RegisteredSchema:
        if request.documents is not None:
            schema_id = cache_key = self.builder.mapping_key(request.documents, request.entry)
            model = self.builder.build_from_mapping(
                request.documents, request.entry, request.force_refresh
            )
        else:
            schema_id = self.builder.cache._make_key("files", tuple(request.entry))
            cache_key = self.builder.model_key(request.entry)
            model = self.builder.build(request.entry, request.force_refresh)
        existing = self._schemas.get(schema_id)
        if existing is not None and existing.model is model:
            return existing
        registered = RegisteredSchema(schema_id, model, list(request.entry), cache_key)
        self._schemas[schema_id] = registered
        logger.info(f"Registered schema {schema_id} ({model!r})")
        return registered

    def get(self, schema_id: str) -> RegisteredSchema:
        registered = self._schemas.get(schema_id)
        if registered is None:
            raise HTTPException(status_code=404, detail=f"Schema not found: {schema_id}")
        return registered

    def remove(self, schema_id: str) -> None:
        self.get(schema_id)
        del self._schemas[schema_id]

    def ids(self) -> List[str]:
        return sorted(self._schemas)


@lru_cache(maxsize=1)
def get_registry() -> SchemaRegistry:
    return SchemaRegistry(get_cached_builder(os.getenv("XSD_ENGINE_BUILD_CONFIG") or None))


def _options(request: ValidateRequest) -> ValidationOptions:
    options = VALIDATION_OPTIONS
    if request.fail_fast is not None:
        options = replace(options, fail_fast=request.fail_fast)
    if request.max_depth is not None:
        options = replace(options, max_depth=request.max_depth)
    return options


def _validate(registered: RegisteredSchema, request: ValidateRequest) -> ValidationOutcome:
    start = time.time()
    outcome = validate(
        registered.model, request.document.encode("utf-8"), _options(request), request.root_element
    )
    get_monitor().record_operation("validate", time.time() - start, outcome.valid)
    return outcome


def _violations(outcome: ValidationOutcome) -> List[ViolationModel]:
    return [ViolationModel(**violation.to_dict()) for violation in outcome.violations]


def _json_data(value: Any) -> Any:
    """Make decoded data JSON friendly (decimals become numbers)."""
    if isinstance(value, Decimal):
        return int(value) if value == value.to_integral_value() else float(value)
    if isinstance(value, dict):
        return {key: _json_data(item) for key, item in value.items()}
    if isinstance(value, list):
        return [_json_data(item) for item in value]
    return value


# ---------------- Endpoints ---------------- #


@app.get("/health")
def health(registry: SchemaRegistry = Depends(get_registry)) -> Dict[str, Any]:
    """Health check endpoint."""
    return {"status": "healthy", "version": __version__, "schemas": len(registry.ids())}


@app.post("/schemas", status_code=201)
def register_schema(
    request: SchemaRequest, registry: SchemaRegistry = Depends(get_registry)
) -> SchemaResponse:
    """Compile a schema set and register it.

    Registering identical documents again returns the same id.
    """
    return registry.register(request).describe(registry.builder.cache)


@app.get("/schemas")
def list_schemas(registry: SchemaRegistry = Depends(get_registry)) -> Dict[str, List[str]]:
    return {"schemas": registry.ids()}


@app.get("/schemas/{schema_id}")
def get_schema(
    schema_id: str, detail: bool = False, registry: SchemaRegistry = Depends(get_registry)
) -> Dict[str, Any]:
    """Describe a registered schema set; ``detail=true`` adds every component."""
    registered = registry.get(schema_id)
    result: Dict[str, Any] = registered.describe(registry.builder.cache).model_dump()
    if detail:
        result["components"] = registered.model.summary()
    return result


@app.delete("/schemas/{schema_id}")
def delete_schema(
    schema_id: str, registry: SchemaRegistry = Depends(get_registry)
) -> Dict[str, str]:
    registry.remove(schema_id)
    return {"message": f"Schema {schema_id} removed"}


@app.post("/schemas/{schema_id}/validate")
def validate_document(
    schema_id: str,
    request: ValidateRequest,
    registry: SchemaRegistry = Depends(get_registry),
) -> ValidateResponse:
    """Validate an XML document against a registered schema set.

    An invalid document is a normal 200 response with ``valid: false``.
    """
    outcome = _validate(registry.get(schema_id), request)
    return ValidateResponse(valid=outcome.valid, violations=_violations(outcome))


@app.post("/schemas/{schema_id}/decode")
def decode_document(
    schema_id: str,
    request: ValidateRequest,
    registry: SchemaRegistry = Depends(get_registry),
) -> DecodeResponse:
    """Validate a document and, when valid, return its JSON value."""
    outcome = _validate(registry.get(schema_id), request)
    if not outcome.valid:
        return DecodeResponse(valid=False, violations=_violations(outcome))
    start = time.time()
    data = decode_outcome(outcome)
    get_monitor().record_operation("decode", time.time() - start)
    return DecodeResponse(valid=True, data=_json_data(data))


@app.post("/schemas/{schema_id}/encode")
async def encode_document(
    schema_id: str,
    raw: Request,
    registry: SchemaRegistry = Depends(get_registry),
) -> EncodeResponse:
    """Encode JSON data as an XML instance of a global element.

    Fractional numbers are read as decimals so decimal-typed values survive
    the round trip exactly.
    """
    registered = registry.get(schema_id)
    try:
        payload = json.loads(await raw.body(), parse_float=Decimal)
        request = EncodeRequest.model_validate(payload)
    except (ValueError, ValidationError) as exc:
        raise HTTPException(status_code=422, detail=f"Invalid encode request: {exc}") from exc

    start = time.time()
    try:
        node = encode_data(request.data, registered.model, request.element)
    except XsdEngineError:
        get_monitor().record_operation("encode", time.time() - start, success=False)
        raise
    get_monitor().record_operation("encode", time.time() - start)
    return EncodeResponse(document=serialize(node))


@app.get("/metrics/performance")
def get_performance_metrics():
    """Operation, request and cache counters."""
    return get_monitor().get_performance_summary()


@app.get("/metrics/cache")
def get_cache_metrics(registry: SchemaRegistry = Depends(get_registry)):
    analytics = get_monitor().get_cache_analytics()
    analytics["stats"] = registry.builder.cache.get_cache_stats()
    return analytics


@app.post("/cache/clear")
def clear_cache(registry: SchemaRegistry = Depends(get_registry)) -> Dict[str, Any]:
    """Drop every cached model; registered schemas then report ``stale``."""
    dropped = registry.builder.invalidate_all()
    return {"message": "Model cache cleared", "dropped": dropped}


@app.post("/metrics/reset")
def reset_metrics():
    """Reset all performance metrics (useful for testing)."""
    get_monitor().reset_metrics()
    return {
        "message": "All metrics have been reset",
        "timestamp": datetime.now().isoformat(),
    }


# ---------------- Error handlers ---------------- #


@app.exception_handler(XsdEngineError)
async def engine_error_handler(request: Request, exc: XsdEngineError):
    """Schema, parse and encode failures become 422 with a machine-readable kind."""
    content: Dict[str, Any] = {
        "error": type(exc).__name__,
        "kind": exc.kind,
        "detail": exc.message,
        "location": exc.location,
    }
    errors = getattr(exc, "errors", None)
    if errors:
        content["errors"] = [
            {"kind": e.kind, "detail": e.message, "location": e.location} for e in errors
        ]
    return JSONResponse(status_code=422, content=content)


@app.exception_handler(404)
async def not_found_handler(request, exc):
    """Custom 404 handler with more helpful error messages."""
    return JSONResponse(
        status_code=404,
        content={
            "error": "Not Found",
            "detail": (
                str(exc.detail)
                if hasattr(exc, "detail")
                else "The requested resource was not found"
            ),
            "path": str(request.url.path),
        },
    )
