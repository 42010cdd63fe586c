"""XSD Engine
==========

XML Schema 1.0 toolkit: load schema document sets, compile them into an
immutable :class:`~xsd_engine.model.SchemaModel`, validate instance
documents into annotated trees, and map valid instances to and from plain
Python data.

Key capabilities
----------------
- Transitive ``include``/``import``/``redefine``/``override`` resolution through a
  pluggable loader (files, URLs, in-memory mappings).
- Full XSD 1.0 built-in datatype library with facet checking and the XSD
  regular expression dialect.
- Content model matching with substitution groups and wildcards, ``xsi:type``,
  ``xsi:nil``, ID/IDREF and key/unique/keyref identity constraints.
- Schema-driven JSON codec (``decode``/``encode``) with a predictable shape.
- Model cache with TTL and file staleness, performance counters, and a
  FastAPI service.

Minimal quick start
-------------------
>>> from xsd_engine import build_schema, validate, decode
>>> model = build_schema(["order.xsd"])
>>> outcome = validate(model, open("order.xml", "rb").read())
>>> outcome.valid
True
>>> decode(outcome)["item"][0]["sku"]
'ABC-1234'

FastAPI application instance (for ASGI servers like uvicorn):
>>> from xsd_engine.app import app  # noqa: F401
"""

__version__ = "0.1.0"

from .builder import BuildConfig, SchemaModelBuilder, build_schema
from .cache import get_cached_builder
from .codec import DecodeOptions, decode, documents_equivalent, encode
from .exceptions import EncodeError, SchemaError, ShapeMismatch, XsdEngineError
from .loaders import FileSystemLoader, MappingLoader, UrlLoader
from .matcher import match
from .model import SchemaModel
from .nodetree import XmlNode, nodes_equal, parse_xml, serialize
from .qnames import QName
from .resolver import resolve
from .validator import Invalid, Valid, ValidationOptions, ValidationOutcome, validate

__all__ = [
    "BuildConfig",
    "DecodeOptions",
    "EncodeError",
    "FileSystemLoader",
    "Invalid",
    "MappingLoader",
    "QName",
    "SchemaError",
    "SchemaModel",
    "SchemaModelBuilder",
    "ShapeMismatch",
    "UrlLoader",
    "Valid",
    "ValidationOptions",
    "ValidationOutcome",
    "XmlNode",
    "XsdEngineError",
    "build_schema",
    "decode",
    "documents_equivalent",
    "encode",
    "get_cached_builder",
    "match",
    "nodes_equal",
    "parse_xml",
    "resolve",
    "serialize",
    "validate",
]
