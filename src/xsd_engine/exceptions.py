"""Error taxonomy for schema loading, compilation, validation and encoding.

Build-time problems (:class:`ResolutionError`, :class:`BuildError`) are fatal
to :func:`~xsd_engine.builder.build_schema`. Instance problems
(:class:`InstanceViolation` subclasses) are raised internally by the type
system and the content model matcher, and the validator turns them into
:class:`~xsd_engine.validator.Violation` records instead of propagating them.
"""

from __future__ import annotations

from typing import Any, List, Optional, Sequence


class XsdEngineError(Exception):
    """Base class for every error raised by the engine."""

    kind = "error"

    def __init__(self, message: str, location: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        self.location = location

    def __str__(self) -> str:
        if self.location:
            return f"{self.message} ({self.location})"
        return self.message


class LoaderNotFound(XsdEngineError):
    """Raised by a loader when a location cannot be fetched."""

    kind = "not_found"


# ---------------------------------------------------------------------------
# Schema errors
# ---------------------------------------------------------------------------


class SchemaError(XsdEngineError):
    """Anything that makes ``build_schema`` fail."""


class ResolutionError(SchemaError):
    kind = "resolution"


class DocumentNotFound(ResolutionError):
    kind = "not_found"


class NamespaceMismatch(ResolutionError):
    kind = "namespace_mismatch"

    def __init__(
        self,
        message: str,
        location: Optional[str] = None,
        expected: Optional[str] = None,
        actual: Optional[str] = None,
    ) -> None:
        super().__init__(message, location)
        self.expected = expected
        self.actual = actual


class UnresolvedImport(ResolutionError):
    kind = "unresolved_import"

    def __init__(
        self, message: str, namespace: Optional[str], location: Optional[str] = None
    ) -> None:
        super().__init__(message, location)
        self.namespace = namespace


class NotASchema(ResolutionError):
    kind = "not_a_schema"


class MalformedDocument(ResolutionError):
    kind = "malformed"


class BuildError(SchemaError):
    kind = "build"


class DuplicateDeclaration(BuildError):
    kind = "duplicate_declaration"


class UnresolvedReference(BuildError):
    kind = "unresolved_reference"


class CircularDerivation(BuildError):
    """A type derivation chain loops back on itself.

    Attributes:
        cycle: QNames in derivation order, first element repeated at the end.
    """

    kind = "circular_derivation"

    def __init__(
        self, message: str, cycle: Sequence[Any], location: Optional[str] = None
    ) -> None:
        super().__init__(message, location)
        self.cycle = list(cycle)


class CircularReference(BuildError):
    """Group, attribute group or substitution group references loop."""

    kind = "circular_reference"

    def __init__(
        self, message: str, cycle: Sequence[Any], location: Optional[str] = None
    ) -> None:
        super().__init__(message, location)
        self.cycle = list(cycle)


class InvalidFacetRestriction(BuildError):
    kind = "invalid_facet_restriction"


class DepthExceeded(BuildError):
    kind = "depth_exceeded"


class UnsupportedFeature(BuildError):
    kind = "unsupported_feature"


class InvalidSchema(BuildError):
    """Structural defect not covered by a more specific error."""

    kind = "invalid_schema"


class SchemaBuildFailed(BuildError):
    """Aggregated build failure (``BuildConfig.aggregate_errors``)."""

    kind = "aggregate"

    def __init__(self, errors: List[BuildError]) -> None:
        summary = "; ".join(str(e) for e in errors[:5])
        if len(errors) > 5:
            summary += f"; ... ({len(errors) - 5} more)"
        super().__init__(f"{len(errors)} schema error(s): {summary}")
        self.errors = errors


# ---------------------------------------------------------------------------
# Instance violations
# ---------------------------------------------------------------------------


class InstanceViolation(XsdEngineError):
    """Recoverable instance-validation failure."""

    kind = "violation"

    def __init__(
        self,
        message: str,
        location: Optional[str] = None,
        expected: Any = None,
        actual: Any = None,
    ) -> None:
        super().__init__(message, location)
        self.expected = expected
        self.actual = actual


class FacetViolation(InstanceViolation):
    kind = "facet"

    def __init__(
        self,
        message: str,
        facet: Optional[str] = None,
        expected: Any = None,
        actual: Any = None,
        location: Optional[str] = None,
    ) -> None:
        super().__init__(message, location, expected, actual)
        self.facet = facet


class ContentModelViolation(InstanceViolation):
    """Child sequence does not fit the content model.

    Attributes:
        position: Index of the first child that could not be matched (equal
            to the number of children when content ended too early).
        kind: ``content_model``, ``unexpected_text`` or ``depth_exceeded``.
        partial: The deepest partial :class:`~xsd_engine.matcher.Assignment`
            reached before matching failed, when known.
    """

    kind = "content_model"

    def __init__(
        self,
        message: str,
        position: Optional[int] = None,
        expected: Any = None,
        actual: Any = None,
        kind: Optional[str] = None,
        location: Optional[str] = None,
        partial: Any = None,
    ) -> None:
        super().__init__(message, location, expected, actual)
        self.position = position
        self.partial = partial
        if kind:
            self.kind = kind


class AttributeViolation(InstanceViolation):
    kind = "attribute"


class IdentityViolation(InstanceViolation):
    kind = "identity_constraint"


class EncodeError(XsdEngineError):
    kind = "encode"


class ShapeMismatch(EncodeError):
    kind = "shape_mismatch"
